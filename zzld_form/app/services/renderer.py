"""
Declaration form rendering.

Stamps personal data onto the first page of the blank declaration form:

1. the Bulgarian captions and the field values are drawn with reportlab
   onto a transparent overlay page the size of the template page, one
   line per field at a fixed (x, y) position;
2. pikepdf places the overlay as a form XObject on the template page and
   serializes the result.

There is no layout engine and no wrapping. Callers are responsible for
keeping values short enough to fit the printed boxes.

Output is byte-for-byte reproducible for the same record and template:
reportlab runs in invariant mode, producer/date metadata is dropped and
the trailer /ID is derived from content.
"""

from __future__ import annotations

import io
import logging
import threading
from dataclasses import dataclass
from typing import Dict, Mapping, Sequence, Tuple

import pikepdf
from pikepdf import Name
from reportlab.pdfgen import canvas

from zzld_form.app.core.errors import RenderError, TemplateError
from zzld_form.app.schemas.personal_data import PersonalData
from zzld_form.app.services.fonts import FormFont
from zzld_form.app.services.template_locator import TemplateRef

logger = logging.getLogger("zzld_form.renderer")

DATE_FORMAT = "%d.%m.%Y"

OVERLAY_RESOURCE_NAME = Name("/ZzldOverlay")

_VOLATILE_DOCINFO_KEYS = ("/Producer", "/Creator", "/CreationDate", "/ModDate")

# reportlab keeps per-document subset state on the shared TTFont object.
_draw_lock = threading.Lock()


@dataclass(frozen=True)
class FieldPosition:
    x: float
    y: float


# Baselines of the value lines on zzld_declaration.pdf (A4, points).
FIELD_LAYOUT: Dict[str, FieldPosition] = {
    "first_name": FieldPosition(200, 730),
    "middle_name": FieldPosition(200, 704),
    "last_name": FieldPosition(200, 678),
    "egn": FieldPosition(200, 652),
    "date_of_birth": FieldPosition(200, 626),
    "address": FieldPosition(200, 570),
    "city": FieldPosition(200, 544),
    "postal_code": FieldPosition(200, 518),
    "phone_number": FieldPosition(200, 492),
    "email": FieldPosition(200, 466),
    "document_number": FieldPosition(200, 410),
    "document_issue_date": FieldPosition(200, 384),
    "document_issued_by": FieldPosition(200, 358),
}


@dataclass(frozen=True)
class Caption:
    text: str
    x: float
    y: float
    size: float = 10.0
    centred: bool = False


# Printed text of the form. The bundled template carries only the rules,
# so the captions share the embedded Cyrillic font with the values.
FORM_CAPTIONS: Tuple[Caption, ...] = (
    Caption("ДЕКЛАРАЦИЯ ПО ЗЗЛД", 297.5, 800, 14, centred=True),
    Caption("по Закона за защита на личните данни", 297.5, 784, 9, centred=True),
    Caption("ЛИЧНИ ДАННИ", 56, 760, 11),
    Caption("Име:", 56, 730),
    Caption("Презиме:", 56, 704),
    Caption("Фамилия:", 56, 678),
    Caption("ЕГН:", 56, 652),
    Caption("Дата на раждане:", 56, 626),
    Caption("АДРЕС И КОНТАКТИ", 56, 596, 11),
    Caption("Адрес:", 56, 570),
    Caption("Град:", 56, 544),
    Caption("Пощенски код:", 56, 518),
    Caption("Телефон:", 56, 492),
    Caption("Имейл:", 56, 466),
    Caption("ДОКУМЕНТ ЗА САМОЛИЧНОСТ", 56, 436, 11),
    Caption("Номер на документа:", 56, 410),
    Caption("Дата на издаване:", 56, 384),
    Caption("Издаден от:", 56, 358),
    Caption(
        "Декларирам, че съм запознат/а с разпоредбите на Закона за защита на личните",
        56, 318, 9,
    ),
    Caption(
        "данни и давам съгласие за обработване на личните ми данни за целите на",
        56, 306, 9,
    ),
    Caption("административното обслужване.", 56, 294, 9),
    Caption("Дата: ____________________", 56, 200),
    Caption("____________________", 380, 200),
    Caption("(подпис)", 430, 188, 8),
)


def field_values(record: PersonalData) -> Dict[str, str]:
    """Text printed for each layout field."""

    def fmt(value) -> str:
        return value.strftime(DATE_FORMAT) if value is not None else ""

    return {
        "first_name": record.first_name,
        "middle_name": record.middle_name,
        "last_name": record.last_name,
        "egn": record.egn,
        "date_of_birth": fmt(record.date_of_birth),
        "address": record.full_address(),
        "city": record.city,
        "postal_code": record.postal_code,
        "phone_number": record.phone_number,
        "email": record.email,
        "document_number": record.document_number,
        "document_issue_date": fmt(record.document_issue_date),
        "document_issued_by": record.document_issued_by,
    }


class PdfFormRenderer:
    """Overlay renderer for the single-page declaration form."""

    def __init__(
        self,
        font: FormFont,
        font_size: float = 11.0,
        layout: Mapping[str, FieldPosition] = FIELD_LAYOUT,
        captions: Sequence[Caption] = FORM_CAPTIONS,
    ) -> None:
        self._font = font
        self._font_size = font_size
        self._layout = dict(layout)
        self._captions = tuple(captions)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def render(self, record: PersonalData, template: TemplateRef) -> bytes:
        """
        Render ``record`` onto ``template`` and return the PDF bytes.

        Raises:
            TemplateError: the template cannot be read or is not a PDF
                with at least one page.
            RenderError: drawing or serialization failed.
        """
        template_bytes = self._read_template(template)

        try:
            pdf = pikepdf.open(io.BytesIO(template_bytes))
        except pikepdf.PdfError as exc:
            raise TemplateError(
                f"Form template {template.name} is not a readable PDF"
            ) from exc

        with pdf:
            if len(pdf.pages) == 0:
                raise TemplateError(f"Form template {template.name} has no pages")

            try:
                page = pdf.pages[0]
                x0, y0, x1, y1 = (float(v) for v in page.mediabox)
                overlay_bytes = self._draw_overlay(record, x1 - x0, y1 - y0)

                with pikepdf.open(io.BytesIO(overlay_bytes)) as overlay:
                    self._stamp(
                        page,
                        overlay.pages[0],
                        pikepdf.Rectangle(x0, y0, x1, y1),
                    )
                    self._strip_volatile_metadata(pdf)

                    output = io.BytesIO()
                    pdf.save(output, deterministic_id=True)
            except Exception as exc:
                raise RenderError(f"Failed to render form: {exc}") from exc

        data = output.getvalue()
        logger.debug(
            "form_rendered",
            extra={"template": template.name, "size_bytes": len(data)},
        )
        return data

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _read_template(template: TemplateRef) -> bytes:
        try:
            data = template.path.read_bytes()
        except OSError as exc:
            raise TemplateError(
                f"Form template {template.name} could not be read"
            ) from exc
        if not data:
            raise TemplateError(f"Form template {template.name} is empty")
        return data

    def _draw_overlay(self, record: PersonalData, width: float, height: float) -> bytes:
        buffer = io.BytesIO()
        values = field_values(record)

        with _draw_lock:
            canv = canvas.Canvas(
                buffer,
                pagesize=(width, height),
                invariant=1,
                pageCompression=1,
            )

            for caption in self._captions:
                canv.setFont(self._font.name, caption.size)
                if caption.centred:
                    canv.drawCentredString(caption.x, caption.y, caption.text)
                else:
                    canv.drawString(caption.x, caption.y, caption.text)

            canv.setFont(self._font.name, self._font_size)

            for field, position in self._layout.items():
                text = values.get(field, "")
                if text:
                    canv.drawString(position.x, position.y, text)

            canv.showPage()
            canv.save()

        return buffer.getvalue()

    @staticmethod
    def _stamp(
        page: pikepdf.Page,
        overlay_page: pikepdf.Page,
        rect: pikepdf.Rectangle,
    ) -> None:
        # Page.add_overlay picks a random resource name; a fixed one keeps
        # the output reproducible.
        formx = overlay_page.as_form_xobject()
        name = page.add_resource(formx, Name.XObject, OVERLAY_RESOURCE_NAME)
        placement = page.calc_form_xobject_placement(
            formx,
            name,
            rect,
            invert_transformations=True,
            allow_shrink=True,
            allow_expand=False,
        )

        page.contents_add(b"q\n", prepend=True)
        page.contents_add(b"Q\n" + placement, prepend=False)
        page.contents_coalesce()

    @staticmethod
    def _strip_volatile_metadata(pdf: pikepdf.Pdf) -> None:
        if "/Info" not in pdf.trailer:
            return
        for key in _VOLATILE_DOCINFO_KEYS:
            if key in pdf.docinfo:
                del pdf.docinfo[key]
