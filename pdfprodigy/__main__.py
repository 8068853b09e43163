"""
Module entry point for: python -m pdfprodigy

    python -m pdfprodigy serve [options]
    python -m pdfprodigy redact <pdf_path> -o <out.pdf> [options]
    python -m pdfprodigy run <kind> <pdf_path> --settings '{...}'
"""

from .cli import cli


def main():
    cli()


if __name__ == "__main__":
    main()
