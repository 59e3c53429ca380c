"""
Mail Merge Engine - Core templating logic
Fills #placeholder# tokens in a DOCX template from spreadsheet rows,
optionally converting every generated document to PDF with LibreOffice
"""

import atexit
import os
import json
from datetime import datetime
import re
import shutil
import subprocess
import tempfile
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from types import MappingProxyType
from typing import List, Dict, Optional, Tuple, Set, Any, Callable, Iterable, Mapping, NamedTuple, Sequence

from docx import Document
from docx.oxml.ns import qn
from openpyxl import load_workbook

DEFAULT_MAX_CONCURRENCY = 6
TEMPLATE_EXTENSION = ".docx"
SPREADSHEET_EXTENSION = ".xlsx"
PDF_EXTENSION = ".pdf"

PLACEHOLDER_MARKER = "#"
PLACEHOLDER_PATTERN = re.compile(r"#(\w*?)#")

CELL_NUMERIC = "n"
CELL_SHARED_STRING = "s"
CELL_OTHER = ""
# openpyxl's data_type for error cells such as #DIV/0! or #N/A
CELL_ERROR = "e"

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

_INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]+')

# Module-level tracking of temp dirs for atexit cleanup if process is killed.
_active_temp_dirs: Set[str] = set()
_active_temp_dirs_lock = threading.Lock()


def _atexit_cleanup_temp_dirs():
    """Last-resort cleanup of temp dirs when the process exits."""
    with _active_temp_dirs_lock:
        for d in list(_active_temp_dirs):
            shutil.rmtree(d, ignore_errors=True)
        _active_temp_dirs.clear()


atexit.register(_atexit_cleanup_temp_dirs)


class MailMergeError(RuntimeError):
    """Fatal error detected before any row is generated."""


class InvalidRunInputError(MailMergeError):
    pass


class TemplateUnreadableError(MailMergeError):
    pass


class DataSourceUnreadableError(MailMergeError):
    pass


class MissingColumnError(MailMergeError):
    def __init__(self, placeholder: str):
        super().__init__(f"Column '{placeholder}' not found in spreadsheet.")
        self.placeholder = placeholder


class ConverterUnavailableError(MailMergeError):
    pass


class ConversionError(RuntimeError):
    """PDF conversion of a single document failed."""

    def __init__(self, message: str, exit_code: Optional[int] = None):
        super().__init__(message)
        self.exit_code = exit_code


class Cell(NamedTuple):
    kind: str
    raw: str


class DataSheet(NamedTuple):
    header: List[Cell]
    rows: List[List[Cell]]
    shared_strings: List[str]


class PlaceholderToken(NamedTuple):
    name: str
    literal: str


class PlaceholderOccurrence(NamedTuple):
    fragment: Any
    token: PlaceholderToken


class GenerationResult(NamedTuple):
    index: int
    key: str
    status: str
    output_path: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == STATUS_COMPLETED


class MergeContext(NamedTuple):
    """Read-only state shared by every row task of one run."""
    template_path: str
    column_map: Mapping[str, int]
    shared_strings: Sequence[str]
    destination_path: str
    staging_dir: str
    convert_to_pdf: bool


class RowJob(NamedTuple):
    index: int
    key: str
    stem: str
    row: List[Cell]


def _record_warning(warnings: Optional[List[Dict]], code: str, message: str, **context) -> None:
    """Append a structured warning when a warning collector is provided."""
    if warnings is None:
        return
    warning = {'code': code, 'message': message}
    warning.update(context)
    warnings.append(warning)


def _safe_progress(callback, *args) -> None:
    """Call a progress callback, swallowing exceptions to avoid crashing the run."""
    if callback is None:
        return
    try:
        callback(*args)
    except Exception:
        pass


def _make_writable_temp_dir(prefix: str) -> str:
    """
    Create a writable temporary directory.
    Some Windows/Python builds can produce temp dirs that are not writable when
    created with tempfile.mkdtemp(mode=0o700 semantics).
    """
    base_candidates = [tempfile.gettempdir(), os.getcwd()]

    for base_dir in base_candidates:
        if not base_dir:
            continue
        try:
            os.makedirs(base_dir, exist_ok=True)
        except OSError:
            continue

        for _ in range(8):
            candidate = os.path.join(base_dir, f"{prefix}{uuid.uuid4().hex}")
            try:
                os.makedirs(candidate, exist_ok=False)
                probe = os.path.join(candidate, ".write_probe")
                with open(probe, "wb") as handle:
                    handle.write(b"ok")
                os.remove(probe)
                return candidate
            except OSError:
                shutil.rmtree(candidate, ignore_errors=True)

    raise RuntimeError("Unable to create a writable temporary directory.")


def _remove_file_quietly(path: Optional[str]) -> None:
    if not path:
        return
    try:
        os.remove(path)
    except OSError:
        pass


def sanitize_file_stem(value: str, max_len: int = 120) -> str:
    """Turn a cell value into something usable as a file name stem."""
    cleaned = _INVALID_FILENAME_CHARS.sub("_", value or "").strip().strip(".")
    if len(cleaned) > max_len:
        cleaned = cleaned[:max_len].rstrip()
    return cleaned or "row"


# ---------------------------------------------------------------------------
# Spreadsheet access
# ---------------------------------------------------------------------------

def get_cell_value(row: Sequence[Cell], column_index: int, shared_strings: Sequence[str]) -> str:
    """
    Return the display string of ``row[column_index]``.

    Numeric cells give their stored text, shared-string cells are looked up
    in ``shared_strings`` and everything else is an empty string. The index
    is trusted: an out-of-range column raises IndexError.
    """
    cell = row[column_index]
    if cell.kind == CELL_NUMERIC:
        return cell.raw
    if cell.kind == CELL_SHARED_STRING:
        return shared_strings[int(cell.raw)]
    return ""


def _format_number(value) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _to_cell(value, data_type: Optional[str], shared_strings: List[str], string_index: Dict[str, int]) -> Cell:
    if value is None or isinstance(value, bool) or data_type == CELL_ERROR:
        return Cell(CELL_OTHER, "")
    if isinstance(value, str):
        position = string_index.get(value)
        if position is None:
            position = len(shared_strings)
            shared_strings.append(value)
            string_index[value] = position
        return Cell(CELL_SHARED_STRING, str(position))
    if data_type == CELL_NUMERIC and isinstance(value, (int, float)):
        return Cell(CELL_NUMERIC, _format_number(value))
    return Cell(CELL_OTHER, "")


def _pad_row(row: List[Cell], width: int) -> List[Cell]:
    # Sheets written without a <dimension> element come back with trailing
    # blank cells missing.
    if len(row) < width:
        row = row + [Cell(CELL_OTHER, "")] * (width - len(row))
    return row


def load_data_sheet(path: str) -> DataSheet:
    """
    Read the first worksheet of an .xlsx workbook.

    String values are stored once in the returned shared-string table and
    referenced by index from their cells. Rows without a single typed cell
    are dropped; the first row is always kept as the header.
    """
    try:
        workbook = load_workbook(path, read_only=True, data_only=True)
    except Exception as exc:
        raise DataSourceUnreadableError(f"Could not open spreadsheet '{path}': {exc}") from exc

    shared_strings: List[str] = []
    string_index: Dict[str, int] = {}
    try:
        if not workbook.worksheets:
            raise DataSourceUnreadableError(f"Spreadsheet '{path}' has no worksheets.")
        worksheet = workbook.worksheets[0]
        rows = [
            [_to_cell(cell.value, getattr(cell, "data_type", None), shared_strings, string_index) for cell in raw_row]
            for raw_row in worksheet.iter_rows()
        ]
    except MailMergeError:
        raise
    except Exception as exc:
        raise DataSourceUnreadableError(f"Could not read spreadsheet '{path}': {exc}") from exc
    finally:
        workbook.close()

    if not rows:
        raise DataSourceUnreadableError(f"Spreadsheet '{path}' has no header row.")

    header = rows[0]
    data_rows = [
        _pad_row(row, len(header))
        for row in rows[1:]
        if any(cell.kind != CELL_OTHER for cell in row)
    ]
    return DataSheet(header=header, rows=data_rows, shared_strings=shared_strings)


# ---------------------------------------------------------------------------
# Placeholder discovery and binding
# ---------------------------------------------------------------------------

def iter_text_fragments(document) -> List:
    """Return every w:t element of the document body, in document order."""
    return list(document.element.body.iter(qn("w:t")))


def scan_placeholders(fragments: Iterable) -> List[PlaceholderOccurrence]:
    """Find #name# tokens inside each fragment; tokens never span fragments."""
    occurrences: List[PlaceholderOccurrence] = []
    for fragment in fragments:
        text = fragment.text or ""
        for match in PLACEHOLDER_PATTERN.finditer(text):
            occurrences.append(
                PlaceholderOccurrence(fragment, PlaceholderToken(name=match.group(1), literal=match.group(0)))
            )
    return occurrences


def scan_document(document) -> List[PlaceholderOccurrence]:
    return scan_placeholders(iter_text_fragments(document))


def find_split_placeholder_fragments(fragments: Iterable) -> List[str]:
    """Texts of fragments that still hold a marker once whole tokens are removed."""
    suspects = []
    for fragment in fragments:
        text = fragment.text or ""
        if PLACEHOLDER_MARKER in PLACEHOLDER_PATTERN.sub("", text):
            suspects.append(text)
    return suspects


def _open_template(template_path: str):
    try:
        return Document(template_path)
    except Exception as exc:
        raise TemplateUnreadableError(f"Could not open template '{template_path}': {exc}") from exc


def discover_placeholders(template_path: str, warnings: Optional[List[Dict]] = None) -> List[str]:
    """Distinct placeholder names of the template, in first-seen order."""
    document = _open_template(template_path)
    fragments = iter_text_fragments(document)
    names = list(dict.fromkeys(occurrence.token.name for occurrence in scan_placeholders(fragments)))
    for text in find_split_placeholder_fragments(fragments):
        _record_warning(
            warnings,
            'placeholder_split_suspected',
            'Text contains a placeholder marker that is not part of a complete token; '
            'the placeholder may be split across formatting runs',
            fragment=text,
        )
    return names


def bind_columns(
    header: Sequence[Cell],
    placeholder_names: Iterable[str],
    shared_strings: Sequence[str],
) -> Mapping[str, int]:
    """
    Map every placeholder name to the index of the first header cell that
    matches it case-insensitively. Raises MissingColumnError for the first
    name without a column.
    """
    # Blank header cells are unnamed columns; nothing binds to them.
    header_values = [get_cell_value(header, index, shared_strings).casefold() for index in range(len(header))]
    column_map: Dict[str, int] = {}
    for name in dict.fromkeys(placeholder_names):
        wanted = name.casefold()
        for index, value in enumerate(header_values):
            if value and value == wanted:
                column_map[name] = index
                break
        else:
            raise MissingColumnError(name)
    return MappingProxyType(column_map)


# ---------------------------------------------------------------------------
# Document generation
# ---------------------------------------------------------------------------

class DocumentInstantiator:
    """Writes a filled private copy of the template for one data row."""

    def __init__(
        self,
        template_path: str,
        column_map: Mapping[str, int],
        shared_strings: Sequence[str],
        work_dir: str,
    ):
        self.template_path = template_path
        self.column_map = column_map
        self.shared_strings = shared_strings
        self.work_dir = work_dir
        self.extension = os.path.splitext(template_path)[1] or TEMPLATE_EXTENSION

    def copy_path_for(self, naming_hint: str) -> str:
        return os.path.join(self.work_dir, sanitize_file_stem(naming_hint) + self.extension)

    def instantiate(self, row: Sequence[Cell], naming_hint: str) -> str:
        """Copy the template, substitute every placeholder and return the copy's path."""
        copy_path = self.copy_path_for(naming_hint)
        shutil.copyfile(self.template_path, copy_path)
        try:
            document = Document(copy_path)
            # Tokens are replaced one at a time over the whole fragment, so a
            # value containing another token's literal is replaced again.
            for fragment, token in scan_document(document):
                value = get_cell_value(row, self.column_map[token.name], self.shared_strings)
                text = (fragment.text or "").replace(token.literal, value)
                fragment.text = text
                if text != text.strip():
                    fragment.set(qn("xml:space"), "preserve")
            document.save(copy_path)
        except Exception:
            _remove_file_quietly(copy_path)
            raise
        return copy_path


class LibreOfficePdfConverter:
    """Converts documents to PDF with a headless LibreOffice process."""

    PDF_FILTER = "pdf:writer_pdf_Export"
    WINDOWS_DEFAULT_PATH = r"C:\Program Files\LibreOffice\program\soffice.com"

    def __init__(self, soffice_path: Optional[str] = None, timeout_seconds: int = 120):
        self.soffice_path = soffice_path
        self.timeout_seconds = timeout_seconds

    def resolve_binary(self) -> Optional[str]:
        explicit = self.soffice_path or os.environ.get("SOFFICE_BIN")
        if explicit:
            return shutil.which(explicit) or (explicit if os.path.isfile(explicit) else None)
        found = shutil.which("soffice") or shutil.which("libreoffice")
        if found:
            return found
        if os.name == 'nt' and os.path.isfile(self.WINDOWS_DEFAULT_PATH):
            return self.WINDOWS_DEFAULT_PATH
        return None

    def is_available(self) -> Tuple[bool, str]:
        if self.resolve_binary() is None:
            return False, "LibreOffice (soffice) was not found; install it or set SOFFICE_BIN."
        return True, ""

    def build_command(self, binary: str, source_path: str, output_dir: str, profile_dir: str) -> List[str]:
        return [
            binary,
            "--headless",
            f"-env:UserInstallation={Path(profile_dir).resolve().as_uri()}",
            "--convert-to", self.PDF_FILTER,
            "--outdir", output_dir,
            source_path,
        ]

    def convert(self, source_path: str, output_dir: str) -> str:
        """Convert one document into ``output_dir`` and return the PDF path."""
        binary = self.resolve_binary()
        if binary is None:
            raise ConversionError("LibreOffice (soffice) was not found.")

        # Each process gets its own profile so parallel conversions do not lock each other out.
        profile_dir = os.path.join(tempfile.gettempdir(), f"LibO_Process_{uuid.uuid4().hex}")
        command = self.build_command(binary, source_path, output_dir, profile_dir)

        creationflags = 0
        if os.name == 'nt':
            creationflags = getattr(subprocess, "CREATE_NO_WINDOW", 0)

        try:
            completed = subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout_seconds,
                creationflags=creationflags,
            )
        except subprocess.TimeoutExpired as exc:
            raise ConversionError(
                f"PDF conversion timed out after {self.timeout_seconds}s"
            ) from exc
        finally:
            shutil.rmtree(profile_dir, ignore_errors=True)

        if completed.returncode != 0:
            raise ConversionError(
                f"PDF conversion error, libreoffice returned exitcode {completed.returncode}",
                exit_code=completed.returncode,
            )

        produced = os.path.join(output_dir, Path(source_path).stem + PDF_EXTENSION)
        if not os.path.exists(produced) or os.path.getsize(produced) == 0:
            raise ConversionError(f"LibreOffice exited successfully but produced no PDF for {source_path}")
        return produced


class RunLogger:
    """Persist run events to text and JSONL logs."""

    _PATH_KEYS = {"file", "output", "template", "data_source", "destination", "path"}

    def __init__(
        self,
        logs_dir: str,
        run_id: str,
        enabled: bool = True,
        privacy_mode: str = "redacted",
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        self.enabled = enabled
        self.privacy_mode = privacy_mode
        self.run_id = run_id
        self.logs_dir = logs_dir
        self.event_callback = event_callback
        self.text_log_path = os.path.join(logs_dir, f"run_{run_id}.log")
        self.jsonl_log_path = os.path.join(logs_dir, f"run_{run_id}.jsonl")
        self._text_handle = None
        self._jsonl_handle = None
        self._lock = threading.Lock()

        if self.enabled:
            os.makedirs(self.logs_dir, exist_ok=True)
            self._text_handle = open(self.text_log_path, "a", encoding="utf-8")
            self._jsonl_handle = open(self.jsonl_log_path, "a", encoding="utf-8")

    def close(self) -> None:
        with self._lock:
            for handle in (self._text_handle, self._jsonl_handle):
                if handle is not None:
                    try:
                        handle.close()
                    except OSError:
                        pass
            self._text_handle = None
            self._jsonl_handle = None

    def _redact_value(self, key: str, value):
        if self.privacy_mode != "redacted":
            return value
        if isinstance(value, str) and key.lower() in self._PATH_KEYS:
            return os.path.basename(value)
        return value

    def log(self, level: str, event: str, message: str, **context) -> None:
        timestamp = datetime.now().isoformat()
        safe_context = {key: self._redact_value(key, value) for key, value in context.items()}
        payload = {
            "ts": timestamp,
            "run_id": self.run_id,
            "level": level.upper(),
            "event": event,
            "message": message,
            "context": safe_context,
        }
        with self._lock:
            if self._jsonl_handle is not None:
                self._jsonl_handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
                self._jsonl_handle.flush()
            if self._text_handle is not None:
                text_context = ""
                if safe_context:
                    context_parts = [f"{key}={value}" for key, value in sorted(safe_context.items())]
                    text_context = " | " + ", ".join(context_parts)
                self._text_handle.write(f"[{timestamp}] {level.upper()} {event}: {message}{text_context}\n")
                self._text_handle.flush()
        _safe_progress(self.event_callback, payload)


def validate_run_inputs(template_path: str, data_path: str, destination_path: str) -> None:
    """Reject missing or mistyped run inputs before anything is opened."""
    if not template_path or not os.path.isfile(template_path):
        raise InvalidRunInputError(f"Template file does not exist: {template_path!r}")
    if not template_path.lower().endswith(TEMPLATE_EXTENSION):
        raise InvalidRunInputError(f"Template must be a {TEMPLATE_EXTENSION} file: {template_path!r}")
    if not data_path or not os.path.isfile(data_path):
        raise InvalidRunInputError(f"Spreadsheet file does not exist: {data_path!r}")
    if not data_path.lower().endswith(SPREADSHEET_EXTENSION):
        raise InvalidRunInputError(f"Spreadsheet must be a {SPREADSHEET_EXTENSION} file: {data_path!r}")
    if not destination_path or not os.path.isdir(destination_path):
        raise InvalidRunInputError(f"Destination folder does not exist: {destination_path!r}")


class MailMergeOrchestrator:
    """Coordinates a whole mail merge run"""

    def __init__(
        self,
        max_concurrency=DEFAULT_MAX_CONCURRENCY,
        convert_to_pdf=False,
        convert_timeout_seconds=120,
        soffice_path=None,
        enable_detailed_logging=True,
        logs_dir=None,
        logs_subdir="logs",
        log_privacy_mode="redacted",
        converter_factory=None,
        instantiator_factory=None,
    ):
        self.max_concurrency = max(1, int(max_concurrency))
        self.convert_to_pdf = convert_to_pdf
        self.convert_timeout_seconds = max(10, int(convert_timeout_seconds))
        self.soffice_path = soffice_path
        self.enable_detailed_logging = enable_detailed_logging
        self.logs_dir = logs_dir
        self.logs_subdir = logs_subdir
        self.log_privacy_mode = log_privacy_mode
        self.converter_factory = converter_factory or LibreOfficePdfConverter
        self.instantiator_factory = instantiator_factory or DocumentInstantiator

    def run(
        self,
        template_path: str,
        data_path: str,
        destination_path: str,
        progress_callback=None,
        event_callback: Optional[Callable[[Dict[str, Any]], None]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict:
        """
        Main entry point for a mail merge run

        Args:
            template_path: .docx template containing #placeholder# tokens
            data_path: .xlsx workbook; first row is the header
            destination_path: Existing folder receiving one file per row
            progress_callback: Optional callback function(current, total, message)
            event_callback: Optional callback receiving every run log payload
            cancel_event: Optional threading.Event; rows not yet started are skipped once set

        Returns:
            Dict with run statistics and per-row results
        """
        started = time.monotonic()
        validate_run_inputs(template_path, data_path, destination_path)

        run_id = datetime.now().strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]
        logs_dir = self.logs_dir or os.path.join(destination_path, self.logs_subdir)
        run_logger = RunLogger(
            logs_dir=logs_dir,
            run_id=run_id,
            enabled=self.enable_detailed_logging,
            privacy_mode=self.log_privacy_mode,
            event_callback=event_callback,
        )
        warnings: List[Dict] = []

        print("Getting ready...")
        try:
            placeholders = discover_placeholders(template_path, warnings)
            sheet = load_data_sheet(data_path)
            column_map = bind_columns(sheet.header, placeholders, sheet.shared_strings)
            converter = None
            if self.convert_to_pdf:
                converter = self.converter_factory(
                    soffice_path=self.soffice_path,
                    timeout_seconds=self.convert_timeout_seconds,
                )
                available, reason = converter.is_available()
                if not available:
                    raise ConverterUnavailableError(f"PDF conversion requires LibreOffice. Details: {reason}")
        except MailMergeError as exc:
            print(f"Error: {exc}")
            run_logger.log("error", "fatal_error", "Run aborted before generation", error=str(exc))
            run_logger.close()
            raise

        for warning in warnings:
            context = {key: value for key, value in warning.items() if key not in {"code", "message"}}
            run_logger.log("warning", warning["code"], warning["message"], **context)

        run_logger.log(
            "info",
            "run_prepared",
            "Placeholders bound to spreadsheet columns",
            template=template_path,
            data_source=data_path,
            placeholders=len(placeholders),
            rows=len(sheet.rows),
        )

        staging_dir = _make_writable_temp_dir(prefix="mailmerge_")
        with _active_temp_dirs_lock:
            _active_temp_dirs.add(staging_dir)

        results: List[GenerationResult] = []
        try:
            context = MergeContext(
                template_path=template_path,
                column_map=column_map,
                shared_strings=tuple(sheet.shared_strings),
                destination_path=destination_path,
                staging_dir=staging_dir,
                convert_to_pdf=self.convert_to_pdf,
            )
            jobs = self._build_jobs(sheet, destination_path)
            results = self._run_jobs(context, jobs, converter, run_logger, progress_callback, cancel_event)
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)
            with _active_temp_dirs_lock:
                _active_temp_dirs.discard(staging_dir)

        elapsed = time.monotonic() - started
        manifest = self._build_manifest(
            run_id=run_id,
            template_path=template_path,
            data_path=data_path,
            destination_path=destination_path,
            placeholders=placeholders,
            column_map=column_map,
            results=results,
            warnings=warnings,
            elapsed=elapsed,
            run_logger=run_logger,
        )
        summary = manifest["summary"]
        print(
            f"Finished in {int(elapsed)}s: {summary['completed_total']} generated, "
            f"{summary['failed_total']} failed, {summary['cancelled_total']} cancelled."
        )
        run_logger.log("info", "run_finished", "Mail merge finished", elapsed_seconds=round(elapsed, 3), **summary)

        if self.enable_detailed_logging:
            manifest_path = os.path.join(logs_dir, f"mail_merge_manifest_{run_id}.json")
            try:
                with open(manifest_path, 'w', encoding='utf-8') as f:
                    json.dump(manifest, f, indent=2)
                manifest['logs']['manifest'] = manifest_path
            except OSError as manifest_exc:
                run_logger.log(
                    "warning",
                    "manifest_write_failed",
                    f"Could not write manifest: {manifest_exc}",
                    path=manifest_path,
                )
        run_logger.close()
        return manifest

    @staticmethod
    def _build_jobs(sheet: DataSheet, destination_path: str) -> List[RowJob]:
        """Give every row a stem unique within the run and in the destination folder."""
        jobs = []
        used: Set[str] = set()
        for index, row in enumerate(sheet.rows):
            key = get_cell_value(row, 0, sheet.shared_strings)
            base = sanitize_file_stem(key)
            stem = base
            counter = 1
            while stem.casefold() in used or any(
                os.path.exists(os.path.join(destination_path, stem + ext))
                for ext in (TEMPLATE_EXTENSION, PDF_EXTENSION)
            ):
                stem = f"{base}_{counter}"
                counter += 1
            used.add(stem.casefold())
            jobs.append(RowJob(index=index, key=key, stem=stem, row=row))
        return jobs

    def _run_jobs(
        self,
        context: MergeContext,
        jobs: List[RowJob],
        converter,
        run_logger: RunLogger,
        progress_callback,
        cancel_event: Optional[threading.Event],
    ) -> List[GenerationResult]:
        instantiator = self.instantiator_factory(
            context.template_path,
            context.column_map,
            context.shared_strings,
            context.staging_dir,
        )
        total = len(jobs)
        processed = 0
        results: List[GenerationResult] = []
        print(f"Templating {total} rows with up to {self.max_concurrency} at a time...")

        with ThreadPoolExecutor(max_workers=self.max_concurrency, thread_name_prefix="mailmerge") as executor:
            futures = [
                executor.submit(self._generate_row, context, job, instantiator, converter, cancel_event)
                for job in jobs
            ]
            for future in as_completed(futures):
                result = future.result()
                results.append(result)
                processed += 1
                message = self._report_result(result, run_logger)
                _safe_progress(progress_callback, processed, total, message)

        results.sort(key=lambda item: item.index)
        return results

    @staticmethod
    def _generate_row(
        context: MergeContext,
        job: RowJob,
        instantiator,
        converter,
        cancel_event: Optional[threading.Event],
    ) -> GenerationResult:
        if cancel_event is not None and cancel_event.is_set():
            return GenerationResult(job.index, job.key, STATUS_CANCELLED)

        try:
            document_path = instantiator.instantiate(job.row, job.stem)
            if context.convert_to_pdf:
                try:
                    produced = converter.convert(document_path, context.staging_dir)
                finally:
                    _remove_file_quietly(document_path)
                output_path = os.path.join(context.destination_path, job.stem + PDF_EXTENSION)
                shutil.move(produced, output_path)
            else:
                output_path = os.path.join(context.destination_path, os.path.basename(document_path))
                shutil.move(document_path, output_path)
            return GenerationResult(job.index, job.key, STATUS_COMPLETED, output_path)
        except Exception as exc:
            return GenerationResult(job.index, job.key, STATUS_FAILED, error=exc)

    @staticmethod
    def _report_result(result: GenerationResult, run_logger: RunLogger) -> str:
        if result.status == STATUS_COMPLETED:
            message = f"Templated doc {result.key} generated successfully!"
            run_logger.log("info", "row_completed", message, key=result.key, output=result.output_path)
        elif result.status == STATUS_CANCELLED:
            message = f"Templated doc {result.key} skipped (run cancelled)"
            run_logger.log("warning", "row_cancelled", message, key=result.key)
        else:
            message = f"Error when generating templated doc {result.key}: {result.error}"
            run_logger.log(
                "warning",
                "row_failed",
                f"Error when generating templated doc {result.key}",
                key=result.key,
                error=str(result.error),
                error_type=type(result.error).__name__,
                exit_code=getattr(result.error, "exit_code", None),
            )
        print(f"  {message}")
        return message

    @staticmethod
    def _build_manifest(
        run_id: str,
        template_path: str,
        data_path: str,
        destination_path: str,
        placeholders: List[str],
        column_map: Mapping[str, int],
        results: List[GenerationResult],
        warnings: List[Dict],
        elapsed: float,
        run_logger: RunLogger,
    ) -> Dict:
        completed = [item for item in results if item.status == STATUS_COMPLETED]
        failed = [item for item in results if item.status == STATUS_FAILED]
        cancelled = [item for item in results if item.status == STATUS_CANCELLED]

        if cancelled:
            status = "cancelled"
        elif failed:
            status = "completed_with_failures"
        else:
            status = "completed"

        manifest = {
            'timestamp': datetime.now().isoformat(),
            'run_id': run_id,
            'template_path': template_path,
            'data_path': data_path,
            'destination_path': destination_path,
            'placeholders': placeholders,
            'column_map': dict(column_map),
            'elapsed_seconds': round(elapsed, 3),
            'output_files': [item.output_path for item in completed],
            'summary': {
                'rows_total': len(results),
                'completed_total': len(completed),
                'failed_total': len(failed),
                'cancelled_total': len(cancelled),
                'warnings_total': len(warnings),
                'status': status,
            },
            'results': [
                {
                    'key': item.key,
                    'status': item.status,
                    'output': item.output_path,
                    'error': str(item.error) if item.error is not None else None,
                }
                for item in results
            ],
            'logs': {
                'text_log': run_logger.text_log_path if run_logger.enabled else None,
                'jsonl_log': run_logger.jsonl_log_path if run_logger.enabled else None,
            },
        }
        if warnings:
            manifest['warnings'] = warnings
        return manifest
