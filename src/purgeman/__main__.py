"""Allow running purgeman with ``python -m purgeman``."""

from purgeman.cli import main

if __name__ == "__main__":
    main()
