"""
Scan a receipt file from the command line and print the draft as JSON.

Usage:
    expense-scan receipt.pdf --mode offline --categories categories.json
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

from expense_scan.config import settings
from expense_scan.models.receipt import Category, OcrMode
from expense_scan.services.ingestion import IngestionService, load_receipt_source
from expense_scan.utils.errors import ExtractionError


def load_categories(path: Optional[str]) -> List[Category]:
    """Read a JSON list of categories ({id, name, description, default_tax_rate, is_active})."""
    if not path:
        return []
    with open(path, encoding="utf-8") as f:
        return [Category.model_validate(item) for item in json.load(f)]


def print_progress(progress: float, status: str) -> None:
    print(f"\r{status}: {progress * 100:5.1f}%", end="", file=sys.stderr, flush=True)


def main(argv: Optional[List[str]] = None) -> int:
    parser_args = argparse.ArgumentParser(description='Scan a receipt into a draft expense')
    parser_args.add_argument('file', help='Receipt file (PDF, PNG, JPG)')
    parser_args.add_argument('--mode', '-m', choices=[m.value for m in OcrMode], default=settings.OCR_MODE,
                             help='Recognition mode (default: %(default)s)')
    parser_args.add_argument('--api-key', default=settings.OCR_API_KEY,
                             help='Remote OCR API key')
    parser_args.add_argument('--lang', choices=['de', 'it'], default=settings.DEFAULT_UI_LANGUAGE,
                             help='UI language, selects the remote OCR language')
    parser_args.add_argument('--categories', '-c', type=str,
                             help='JSON file with the categories to choose from')
    parser_args.add_argument('--verbose', '-v', action='store_true',
                             help='Show log output')
    args = parser_args.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        categories = load_categories(args.categories)
    except (OSError, ValueError) as e:
        print(f"Invalid categories file: {e}", file=sys.stderr)
        return 1

    try:
        source = load_receipt_source(args.file)
        draft = IngestionService().scan(
            source,
            mode=OcrMode(args.mode),
            credential=args.api_key or None,
            ui_language=args.lang,
            categories=categories,
            on_progress=print_progress,
        )
    except ExtractionError as e:
        print(f"\nScan failed: {e.message}", file=sys.stderr)
        return 1

    print(file=sys.stderr)
    print(draft.model_dump_json(indent=2))
    return 0


if __name__ == '__main__':
    sys.exit(main())
