from types import SimpleNamespace

import pytest
from docx import Document

from mailmerge_engine import (
    PlaceholderToken,
    TemplateUnreadableError,
    discover_placeholders,
    find_split_placeholder_fragments,
    scan_document,
    scan_placeholders,
)


def _fragments(*texts):
    return [SimpleNamespace(text=text) for text in texts]


def test_tokens_are_non_greedy_and_keep_fragment_order():
    fragments = _fragments("A#x#B#y#C", "plain", "#z#")

    occurrences = scan_placeholders(fragments)

    assert [occurrence.token for occurrence in occurrences] == [
        PlaceholderToken("x", "#x#"),
        PlaceholderToken("y", "#y#"),
        PlaceholderToken("z", "#z#"),
    ]
    assert occurrences[0].fragment is fragments[0]
    assert occurrences[1].fragment is fragments[0]
    assert occurrences[2].fragment is fragments[2]


def test_empty_name_and_adjacent_tokens():
    occurrences = scan_placeholders(_fragments("##", "#a##b#"))

    assert [occurrence.token.name for occurrence in occurrences] == ["", "a", "b"]


def test_names_are_word_characters_only():
    assert scan_placeholders(_fragments("#first name#", "Issue #5 is open")) == []


def test_missing_fragment_text_is_treated_as_empty():
    assert scan_placeholders(_fragments(None, "")) == []


def test_rescanning_yields_the_same_occurrences():
    fragments = _fragments("Dear #Name#,", "Your id is #id#")

    first = scan_placeholders(fragments)
    second = scan_placeholders(fragments)

    assert first == second


def test_split_fragments_are_reported():
    suspects = find_split_placeholder_fragments(_fragments("Hello #na", "me#!", "#ok# done"))

    assert suspects == ["Hello #na", "me#!"]


def test_scan_document_reads_every_run(make_docx):
    path = make_docx("template.docx", [["Dear ", "#name#", ", id #id#"], "No tokens here"])

    occurrences = scan_document(Document(str(path)))

    assert [occurrence.token.literal for occurrence in occurrences] == ["#name#", "#id#"]
    assert occurrences[1].fragment.text == ", id #id#"


def test_scan_document_includes_table_text(tmp_path):
    path = tmp_path / "table.docx"
    document = Document()
    table = document.add_table(rows=1, cols=2)
    table.cell(0, 0).text = "#left#"
    table.cell(0, 1).text = "#right#"
    document.save(path)

    names = [occurrence.token.name for occurrence in scan_document(Document(str(path)))]

    assert names == ["left", "right"]


def test_discover_placeholders_returns_distinct_names_in_order(make_docx):
    path = make_docx("template.docx", ["#b# and #a#", "#b# again", "#A#"])

    assert discover_placeholders(str(path)) == ["b", "a", "A"]


def test_discover_placeholders_warns_about_split_tokens(make_docx):
    path = make_docx("template.docx", [["Hello #na", "me#"], "#id#"])
    warnings = []

    names = discover_placeholders(str(path), warnings)

    assert names == ["id"]
    assert [warning["code"] for warning in warnings] == [
        "placeholder_split_suspected",
        "placeholder_split_suspected",
    ]


def test_unreadable_template_is_fatal(tmp_path):
    bad = tmp_path / "bad.docx"
    bad.write_text("invalid docx bytes", encoding="utf-8")

    with pytest.raises(TemplateUnreadableError):
        discover_placeholders(str(bad))
