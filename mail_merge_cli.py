"""
Mail Merge - Command-line runner
Headless counterpart of the desktop window, suitable for scripts and schedulers.

Exit status: 0 when every row was generated, 2 when at least one row failed
or was cancelled, 1 when the run was aborted before generation.
"""

import argparse
import sys

from mailmerge_engine import DEFAULT_MAX_CONCURRENCY, MailMergeError, MailMergeOrchestrator

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_ROWS_FAILED = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mail-merge",
        description="Fill a .docx template with every row of an .xlsx spreadsheet",
    )
    parser.add_argument("template", help="Template .docx containing #Column# placeholders")
    parser.add_argument("spreadsheet", help="Spreadsheet .xlsx whose first row holds the column names")
    parser.add_argument("destination", help="Existing folder receiving one document per row")
    parser.add_argument(
        "--pdf", action="store_true", help="Convert every document to PDF (requires LibreOffice)"
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=DEFAULT_MAX_CONCURRENCY,
        help=f"Rows generated at the same time (default: {DEFAULT_MAX_CONCURRENCY})",
    )
    parser.add_argument("--soffice", default=None, help="Path to the LibreOffice soffice binary")
    parser.add_argument(
        "--timeout", type=int, default=120, help="Seconds allowed per PDF conversion (default: 120)"
    )
    parser.add_argument(
        "--no-log-files",
        action="store_true",
        help="Do not write run logs and the manifest to <destination>/logs",
    )
    return parser


def main(argv=None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    if args.workers < 1:
        print("Error: --workers must be at least 1", file=sys.stderr)
        return EXIT_FATAL

    orchestrator = MailMergeOrchestrator(
        max_concurrency=args.workers,
        convert_to_pdf=args.pdf,
        convert_timeout_seconds=args.timeout,
        soffice_path=args.soffice,
        enable_detailed_logging=not args.no_log_files,
    )
    try:
        result = orchestrator.run(args.template, args.spreadsheet, args.destination)
    except MailMergeError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_FATAL

    summary = result["summary"]
    if summary["status"] != "completed":
        print(
            f"{summary['failed_total']} row(s) failed, {summary['cancelled_total']} cancelled; "
            f"see {result['logs'].get('text_log') or 'console output'}",
            file=sys.stderr,
        )
        return EXIT_ROWS_FAILED
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
