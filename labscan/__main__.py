"""
Module entry point for: python -m labscan

Allows running the scanner directly as a module:
    python -m labscan scan <report.pdf> [options]
    python -m labscan parse-text <ocr_output.txt>
    python -m labscan serve [options]
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
