from pathlib import Path

SOURCE = Path(__file__).resolve().parent.parent / "mail_merge_gui.py"


def test_gui_default_concurrency_matches_engine_default():
    source = SOURCE.read_text(encoding="utf-8")
    assert "self.max_concurrency = tk.IntVar(value=DEFAULT_MAX_CONCURRENCY)" in source


def test_gui_pdf_conversion_is_opt_in():
    source = SOURCE.read_text(encoding="utf-8")
    assert "self.convert_to_pdf = tk.BooleanVar(value=False)" in source
