"""Tests for CSV / sheet import parsing."""

import asyncio

import httpx
import pytest

from bulkvideo.animation_provider import AnimationProviderId
from bulkvideo.errors import InputValidationError, InvalidProviderError
from bulkvideo.pipeline.models import ColumnMapping
from bulkvideo.pipeline.parser import fetch_sheet_rows, parse_table, read_csv_text, sheet_csv_url

CSV = '''text_content,product_image,image_style,video_formats,animation_provider,duration,scene_count
"Aurora headphones, noise cancelling",https://cdn.example.com/aurora.png,"studio, soft light","1080x1920, 1920x1080",bytedance,10,2
"The ""Nimbus"" sneaker",,,,,,
'''


def test_parses_quoted_cells_and_overrides():
    result = parse_table(read_csv_text(CSV))

    first, second = result.specs
    assert first.row_index == 1
    assert first.text_content == "Aurora headphones, noise cancelling"
    assert first.product_image_url == "https://cdn.example.com/aurora.png"
    assert first.image_style == "studio, soft light"
    assert first.video_formats == ["1080x1920", "1920x1080"]
    assert first.animation_provider == AnimationProviderId.BYTEDANCE
    assert first.duration == 10
    assert first.scene_count == 2

    assert second.text_content == 'The "Nimbus" sneaker'
    assert second.product_image_url is None
    assert second.video_formats == []
    assert second.animation_provider is None
    assert result.warnings == []


def test_parsing_is_idempotent():
    rows = read_csv_text(CSV)
    assert parse_table(rows) == parse_table(rows)


def test_columns_in_any_order_and_any_case():
    rows = [
        ["  Scene_Count ", "ANIMATION_PROVIDER", "Text_Content"],
        ["3", " Runway ", "Vertex backpack"],
    ]

    [spec] = parse_table(rows).specs

    assert spec.text_content == "Vertex backpack"
    assert spec.animation_provider == AnimationProviderId.RUNWAY
    assert spec.scene_count == 3


def test_custom_column_mapping():
    rows = [["Copy", "Image"], ["Solace candle", "https://cdn.example.com/candle.jpg"]]
    mapping = ColumnMapping(text_content="copy", product_image="image")

    [spec] = parse_table(rows, mapping).specs

    assert spec.text_content == "Solace candle"
    assert spec.product_image_url == "https://cdn.example.com/candle.jpg"


def test_unknown_provider_fails_whole_parse_with_row_number():
    rows = [["text_content", "animation_provider"], ["ok", "bytedance"], ["bad", "sora"]]

    with pytest.raises(InvalidProviderError, match="Row 2"):
        parse_table(rows)


@pytest.mark.parametrize("value", ["0", "-5", "ten", "2.5"])
def test_bad_numbers_are_rejected(value):
    rows = [["text_content", "duration"], ["Aurora", value]]
    with pytest.raises(InputValidationError, match="Row 1: duration"):
        parse_table(rows)


def test_blank_rows_are_skipped_with_warning():
    rows = [["text_content", "image_style"], ["", "minimal"], ["Aurora", ""], ["", ""]]

    result = parse_table(rows)

    assert [s.row_index for s in result.specs] == [2]
    assert result.warnings == ["Row 1: empty text content, row skipped"]


def test_invalid_format_tokens_become_warnings():
    rows = [["text_content", "video_formats"], ["Aurora", "1080x1920, square, 1080X1920"]]

    result = parse_table(rows)

    assert result.specs[0].video_formats == ["1080x1920"]
    assert result.warnings == ["Row 1: ignoring invalid format 'square'"]


@pytest.mark.parametrize("rows, message", [
    ([], "empty"),
    ([["", " "]], "empty"),
    ([["product_image"], ["x"]], "Text column"),
    ([["text_content"]], "no data rows"),
    ([["text_content"], [""]], "no data rows"),
])
def test_structural_errors(rows, message):
    with pytest.raises(InputValidationError, match=message):
        parse_table(rows)


def test_read_csv_tolerates_bom_and_blank_lines():
    rows = read_csv_text("\ufefftext_content\r\n\r\nAurora\r\n")
    assert rows == [["text_content"], ["Aurora"]]


def test_sheet_csv_url_keeps_gid():
    url = "https://docs.google.com/spreadsheets/d/1AbC_d-9/edit#gid=42"
    assert sheet_csv_url(url) == "https://docs.google.com/spreadsheets/d/1AbC_d-9/export?format=csv&gid=42"
    assert sheet_csv_url("https://docs.google.com/spreadsheets/d/1AbC/edit?usp=sharing").endswith("format=csv")

    with pytest.raises(InputValidationError):
        sheet_csv_url("https://example.com/file.csv")


def test_fetch_sheet_rows():
    def handler(request: httpx.Request):
        assert request.url.path == "/spreadsheets/d/sheet1/export"
        return httpx.Response(200, text="text_content\nAurora\n", headers={"content-type": "text/csv"})

    rows = asyncio.run(fetch_sheet_rows(
        "https://docs.google.com/spreadsheets/d/sheet1/edit",
        transport=httpx.MockTransport(handler),
    ))
    assert rows == [["text_content"], ["Aurora"]]


def test_private_sheet_is_a_validation_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>", headers={"content-type": "text/html"}))
    with pytest.raises(InputValidationError, match="not publicly readable"):
        asyncio.run(fetch_sheet_rows("https://docs.google.com/spreadsheets/d/sheet1/edit", transport=transport))
