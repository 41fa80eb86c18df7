"""Allow ``python -m docbridge``."""

from docbridge.cli import main

main()
