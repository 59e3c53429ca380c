import mailmerge_engine
from mail_merge_cli import EXIT_FATAL, EXIT_OK, EXIT_ROWS_FAILED, main


def _inputs(make_docx, make_xlsx):
    template = make_docx("letter.docx", ["Dear #Name#"])
    data = make_xlsx("people.xlsx", [["ref", "Name"], ["a", "Ann"], ["b", "Bob"]])
    return str(template), str(data)


def test_all_rows_generated_exits_zero(tmp_path, make_docx, make_xlsx):
    template, data = _inputs(make_docx, make_xlsx)
    destination = tmp_path / "out"
    destination.mkdir()

    code = main([template, data, str(destination), "--workers", "2", "--no-log-files"])

    assert code == EXIT_OK
    assert sorted(path.name for path in destination.iterdir()) == ["a.docx", "b.docx"]


def test_row_failure_exits_with_distinct_status(tmp_path, make_docx, make_xlsx, monkeypatch):
    template, data = _inputs(make_docx, make_xlsx)
    destination = tmp_path / "out"
    destination.mkdir()
    original = mailmerge_engine.DocumentInstantiator.instantiate

    def flaky(self, row, naming_hint):
        if naming_hint == "b":
            raise ValueError("bad row")
        return original(self, row, naming_hint)

    monkeypatch.setattr(mailmerge_engine.DocumentInstantiator, "instantiate", flaky)

    code = main([template, data, str(destination)])

    assert code == EXIT_ROWS_FAILED
    assert (destination / "a.docx").exists()


def test_fatal_error_exits_one(tmp_path, make_docx, make_xlsx, capsys):
    template = make_docx("letter.docx", ["Dear #Missing#"])
    data = make_xlsx("people.xlsx", [["Name"], ["Ann"]])
    destination = tmp_path / "out"
    destination.mkdir()

    code = main([str(template), str(data), str(destination)])

    assert code == EXIT_FATAL
    assert "Column 'Missing' not found in spreadsheet." in capsys.readouterr().err


def test_worker_count_must_be_positive(tmp_path, make_docx, make_xlsx):
    template, data = _inputs(make_docx, make_xlsx)

    assert main([template, data, str(tmp_path), "--workers", "0"]) == EXIT_FATAL
