# =============================================================================
# Kestrel Entry Point for `python -m kestrel`
# =============================================================================
# Equivalent to running the 'kestrel' command after installation.
# =============================================================================

from kestrel.app import main

if __name__ == "__main__":
    main()
