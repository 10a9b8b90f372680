from __future__ import annotations

import argparse
import atexit
import logging
import sys
from pathlib import Path
from typing import List, Optional

from .config import Settings, configure_logging
from .errors import PdfPinsError


def parse_args(argv: List[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="pdfpins", description="PDF pins & page analysis server")
    parser.add_argument("--verbose", action="store_true", help="Debug logging.")
    subparsers = parser.add_subparsers(dest="command")

    serve = subparsers.add_parser("serve", help="Run the HTTP server (default).")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=5000)

    text = subparsers.add_parser("text", help="Print a PDF's text in reading order.")
    text.add_argument("pdf", type=Path)
    text.add_argument("--page", type=int, default=None, help="Only this 1-based page.")
    text.add_argument("--strategy", choices=("anchored", "gap"), default=None)

    return parser.parse_args(argv)


def run_serve(args: argparse.Namespace, settings: Settings) -> None:
    from .app import create_app

    print(f"""
╔══════════════════════════════════════════════════════════╗
║        pdfpins: PDF notes & page explanations            ║
╠══════════════════════════════════════════════════════════╣
║  model : {settings.ollama_model:<48}║
║  ollama: {settings.ollama_host:<48}║
╚══════════════════════════════════════════════════════════╝

  → http://{args.host}:{args.port}
""")
    app = create_app(settings)
    atexit.register(app.extensions["pdfpins"]["sessions"].close_all)
    app.run(host=args.host, port=args.port, debug=False, threaded=True)


def run_text(args: argparse.Namespace, settings: Settings) -> None:
    from .extraction import extract_page_texts

    pages = [args.page] if args.page is not None else None
    strategy = args.strategy or settings.layout_strategy
    texts = extract_page_texts(args.pdf.read_bytes(), pages, settings.y_tolerance, strategy)
    for number, text in texts.items():
        print(f"── page {number} ──")
        print(text)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging(verbose=args.verbose)
    settings = Settings.from_env()
    try:
        if args.command == "text":
            run_text(args, settings)
        else:
            if args.command is None:
                args.host, args.port = "127.0.0.1", 5000
            run_serve(args, settings)
    except KeyboardInterrupt:
        print("\nStopped.")
    except (PdfPinsError, OSError) as e:
        logging.error("%s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
