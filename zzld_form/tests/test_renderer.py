import io
from datetime import date

import pikepdf
import pytest

from zzld_form.app.core.config import DEFAULT_FONT_PATH, DEFAULT_TEMPLATE_PATH
from zzld_form.app.core.errors import RenderError, TemplateError
from zzld_form.app.schemas.personal_data import PersonalData
from zzld_form.app.services.fonts import FormFont
from zzld_form.app.services.renderer import (
    FIELD_LAYOUT,
    FORM_CAPTIONS,
    OVERLAY_RESOURCE_NAME,
    PdfFormRenderer,
    field_values,
)
from zzld_form.app.services.template_locator import TemplateLocator, TemplateRef
from zzld_form.tests.fixtures.pdf_factory import not_a_pdf, write_template


@pytest.fixture
def renderer() -> PdfFormRenderer:
    return PdfFormRenderer(FormFont.load(DEFAULT_FONT_PATH))


@pytest.fixture
def record() -> PersonalData:
    return PersonalData(
        first_name="Иван",
        middle_name="Георгиев",
        last_name="Петров",
        egn="1234567890",
        city="София",
        postal_code="1000",
        street="Витоша",
        number="1",
        email="ivan@example.bg",
        date_of_birth=date(1990, 1, 31),
    )


def template_ref(path) -> TemplateRef:
    return TemplateRef(name=path.name, path=path)


def overlay_unicode_maps(data: bytes) -> bytes:
    """Concatenated ToUnicode CMaps of the fonts used by the stamped overlay."""
    with pikepdf.open(io.BytesIO(data)) as pdf:
        overlay = pdf.pages[0].Resources.XObject[OVERLAY_RESOURCE_NAME]
        fonts = overlay.Resources.Font
        return b"".join(
            fonts[key].ToUnicode.read_bytes().upper()
            for key in fonts.keys()
            if "/ToUnicode" in fonts[key]
        )


# ------------------------------------------------------------------
# Happy path
# ------------------------------------------------------------------

def test_render_bundled_template(renderer, record):
    template = TemplateLocator(DEFAULT_TEMPLATE_PATH).resolve()

    data = renderer.render(record, template)

    assert data.startswith(b"%PDF-")
    with pikepdf.open(io.BytesIO(data)) as pdf:
        assert len(pdf.pages) == 1
        assert pdf.pages[0].mediabox[2] == 595


def test_render_embeds_truetype_font(renderer, record, tmp_path):
    data = renderer.render(record, template_ref(write_template(tmp_path)))

    assert b"DejaVuSans" in data
    assert b"/FontFile2" in data


def test_render_is_deterministic(renderer, record, tmp_path):
    template = template_ref(write_template(tmp_path))

    first = renderer.render(record, template)
    second = renderer.render(record, template)

    assert first == second


def test_overlay_resource_name_is_fixed(renderer, record, tmp_path):
    template = template_ref(write_template(tmp_path))

    first = renderer.render(record, template)
    second = renderer.render(record, template)

    with pikepdf.open(io.BytesIO(first)) as pdf:
        assert set(pdf.pages[0].Resources.XObject.keys()) == {"/ZzldOverlay"}
    assert first == second


def test_different_records_render_differently(renderer, record, tmp_path):
    template = template_ref(write_template(tmp_path))
    other = record.model_copy(update={"first_name": "Мария"})

    assert renderer.render(record, template) != renderer.render(other, template)


def test_only_first_page_is_stamped(renderer, record, tmp_path):
    template = template_ref(write_template(tmp_path, pages=2))

    data = renderer.render(record, template)

    with pikepdf.open(io.BytesIO(data)) as pdf:
        assert len(pdf.pages) == 2
        assert "/XObject" in pdf.pages[0].Resources
        assert "/XObject" not in pdf.pages[1].get("/Resources", {})


# ------------------------------------------------------------------
# Captions
# ------------------------------------------------------------------

def test_form_captions_are_bulgarian():
    texts = [caption.text for caption in FORM_CAPTIONS]

    assert "ДЕКЛАРАЦИЯ ПО ЗЗЛД" in texts
    assert "Име:" in texts
    assert "ЕГН:" in texts
    assert not any("Name" in text or "EGN" in text for text in texts)


def test_captions_are_drawn_with_embedded_font(renderer, record):
    template = TemplateLocator(DEFAULT_TEMPLATE_PATH).resolve()

    cmaps = overlay_unicode_maps(renderer.render(record, template))

    # "Д" appears in the captions but in none of the record's values.
    assert b"<0414>" in cmaps


def test_captions_can_be_disabled(record):
    renderer = PdfFormRenderer(FormFont.load(DEFAULT_FONT_PATH), captions=())
    template = TemplateLocator(DEFAULT_TEMPLATE_PATH).resolve()

    cmaps = overlay_unicode_maps(renderer.render(record, template))

    assert b"<0414>" not in cmaps
    assert b"<0418>" in cmaps


# ------------------------------------------------------------------
# Field values
# ------------------------------------------------------------------

def test_field_values_format_dates_and_address(record):
    values = field_values(record)

    assert values["date_of_birth"] == "31.01.1990"
    assert values["document_issue_date"] == ""
    assert values["address"] == "гр.(с) София 1000, ул. Витоша 1"
    assert set(FIELD_LAYOUT) <= set(values)


# ------------------------------------------------------------------
# Failure modes
# ------------------------------------------------------------------

def test_missing_template_raises_template_error(renderer, record, tmp_path):
    with pytest.raises(TemplateError, match="could not be read"):
        renderer.render(record, template_ref(tmp_path / "absent.pdf"))


def test_empty_template_raises_template_error(renderer, record, tmp_path):
    empty = tmp_path / "empty.pdf"
    empty.write_bytes(b"")

    with pytest.raises(TemplateError, match="is empty"):
        renderer.render(record, template_ref(empty))


def test_non_pdf_template_raises_template_error(renderer, record, tmp_path):
    with pytest.raises(TemplateError, match="not a readable PDF"):
        renderer.render(record, template_ref(not_a_pdf(tmp_path)))


def test_template_without_pages_raises_template_error(renderer, record, tmp_path):
    with pytest.raises(TemplateError, match="no pages"):
        renderer.render(record, template_ref(write_template(tmp_path, pages=0)))


def test_template_error_is_a_render_error():
    assert issubclass(TemplateError, RenderError)
