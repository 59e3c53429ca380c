from pathlib import Path

import pytest
from docx import Document
from docx.oxml.ns import qn

from mailmerge_engine import DocumentInstantiator, bind_columns, discover_placeholders, load_data_sheet


@pytest.fixture
def merge_inputs(make_docx, make_xlsx):
    template = make_docx(
        "template.docx",
        [
            "A#x#B#y#C",
            ["Dear ", "#name#", ", welcome."],
            "Nothing to replace",
        ],
    )
    data = make_xlsx(
        "data.xlsx",
        [
            ["Name", "X", "Y"],
            ["Ann", 1, 2],
        ],
    )
    sheet = load_data_sheet(str(data))
    column_map = bind_columns(sheet.header, discover_placeholders(str(template)), sheet.shared_strings)
    return template, sheet, column_map


def test_fragment_local_substitution_preserves_surrounding_text(tmp_path, merge_inputs, read_paragraphs):
    template, sheet, column_map = merge_inputs
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    instantiator = DocumentInstantiator(str(template), column_map, sheet.shared_strings, str(work_dir))

    output = instantiator.instantiate(sheet.rows[0], "Ann")

    assert read_paragraphs(output) == ["A1B2C", "Dear Ann, welcome.", "Nothing to replace"]


def test_copy_is_named_from_hint_and_template_is_untouched(tmp_path, merge_inputs, read_paragraphs):
    template, sheet, column_map = merge_inputs
    original_bytes = template.read_bytes()
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    instantiator = DocumentInstantiator(str(template), column_map, sheet.shared_strings, str(work_dir))

    output = Path(instantiator.instantiate(sheet.rows[0], "Invoice: Ann/2024"))

    assert output.parent == work_dir
    assert output.name == "Invoice_ Ann_2024.docx"
    assert template.read_bytes() == original_bytes
    assert "#x#" in read_paragraphs(template)[0]


def test_instantiating_twice_gives_identical_text(tmp_path, merge_inputs, read_paragraphs):
    template, sheet, column_map = merge_inputs
    first_dir = tmp_path / "first"
    second_dir = tmp_path / "second"
    first_dir.mkdir()
    second_dir.mkdir()

    first = DocumentInstantiator(str(template), column_map, sheet.shared_strings, str(first_dir))
    second = DocumentInstantiator(str(template), column_map, sheet.shared_strings, str(second_dir))

    assert read_paragraphs(first.instantiate(sheet.rows[0], "Ann")) == read_paragraphs(
        second.instantiate(sheet.rows[0], "Ann")
    )


def test_leading_whitespace_values_are_preserved(tmp_path, make_docx, make_xlsx):
    template = make_docx("template.docx", ["#pad#"])
    data = make_xlsx("data.xlsx", [["pad"], ["  indented"]])
    sheet = load_data_sheet(str(data))
    column_map = bind_columns(sheet.header, ["pad"], sheet.shared_strings)
    instantiator = DocumentInstantiator(str(template), column_map, sheet.shared_strings, str(tmp_path))

    output = instantiator.instantiate(sheet.rows[0], "padded")

    text_element = next(Document(output).element.body.iter(qn("w:t")))
    assert text_element.text == "  indented"
    assert text_element.get(qn("xml:space")) == "preserve"


def test_failed_substitution_leaves_no_copy(tmp_path, make_docx, make_xlsx):
    template = make_docx("template.docx", ["#known# #unknown#"])
    data = make_xlsx("data.xlsx", [["known"], ["value"]])
    sheet = load_data_sheet(str(data))
    column_map = bind_columns(sheet.header, ["known"], sheet.shared_strings)
    work_dir = tmp_path / "work"
    work_dir.mkdir()
    instantiator = DocumentInstantiator(str(template), column_map, sheet.shared_strings, str(work_dir))

    with pytest.raises(KeyError):
        instantiator.instantiate(sheet.rows[0], "row")

    assert list(work_dir.iterdir()) == []


def test_value_containing_a_later_token_is_replaced_again(tmp_path, make_docx, make_xlsx, read_paragraphs):
    template = make_docx("template.docx", ["#a# and #b#"])
    data = make_xlsx("data.xlsx", [["a", "b"], ["#b#", "B"]])
    sheet = load_data_sheet(str(data))
    column_map = bind_columns(sheet.header, discover_placeholders(str(template)), sheet.shared_strings)
    instantiator = DocumentInstantiator(str(template), column_map, sheet.shared_strings, str(tmp_path))

    output = instantiator.instantiate(sheet.rows[0], "row")

    assert read_paragraphs(output) == ["B and B"]
