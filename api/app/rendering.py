
# PDF composition: stamps resolved field values onto the template with
# reportlab overlays merged by pypdf, then appends a certificate page.

from reportlab.pdfgen import canvas
from reportlab.lib.pagesizes import letter
from reportlab.lib.utils import ImageReader
from io import BytesIO
from pypdf import PdfReader, PdfWriter
import hashlib

DEFAULT_SIGNATURE_W = 180.0
DEFAULT_SIGNATURE_H = 80.0

def _overlay_page(width, height, draw_ops):
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height))
    for op in draw_ops:
        t = op.get("type")
        if t == "text":
            c.setFont("Helvetica", 10)
            c.drawString(op["x"], op["y"], op["text"])
        elif t == "checkbox":
            x, y = op["x"], op["y"]
            c.rect(x, y, 10, 10, stroke=1, fill=0)
            if op.get("checked"):
                c.line(x, y, x+10, y+10); c.line(x, y+10, x+10, y)
        elif t == "image":
            c.drawImage(ImageReader(BytesIO(op["png"])), op["x"], op["y"], width=op["w"], height=op["h"], mask='auto')
    c.showPage()
    c.save()
    return buf.getvalue()

def _certificate(writer: PdfWriter, audit: dict):
    buf = BytesIO()
    c = canvas.Canvas(buf, pagesize=letter)
    c.setFont("Helvetica-Bold", 14)
    c.drawString(72, 750, "Certificate of Completion")
    c.setFont("Helvetica", 10)
    y = 720
    for k, v in audit.items():
        line = f"{k}: {v}"
        c.drawString(72, y, line[:95])
        y -= 14
        if y < 72:
            c.showPage(); y = 750
    c.showPage(); c.save()
    buf.seek(0)
    writer.append_pages_from_reader(PdfReader(buf))

def _draw_op(kind: str, geometry: dict, value):
    x = float(geometry.get("x", 0))
    y = float(geometry.get("y", 0))
    if kind in ("text", "date", "dropdown"):
        return {"type": "text", "x": x, "y": y, "text": str(value)}
    if kind == "checkbox":
        return {"type": "checkbox", "x": x, "y": y, "checked": bool(value)}
    if kind in ("signature", "initials"):
        return {
            "type": "image",
            "x": x,
            "y": y,
            "w": float(geometry.get("w") or DEFAULT_SIGNATURE_W),
            "h": float(geometry.get("h") or DEFAULT_SIGNATURE_H),
            "png": value,
        }
    raise ValueError(f"unsupported field kind {kind!r}")

def render_artifact(template_pdf: bytes, placements: list, audit: dict):
    """Compose the final document.

    ``placements`` is a list of ``{"kind", "geometry", "value"}`` dicts where
    image values are already raw PNG bytes. Returns ``(pdf_bytes, sha256)``.
    """
    reader = PdfReader(BytesIO(template_pdf))
    writer = PdfWriter()
    num_pages = len(reader.pages)
    for page in reader.pages:
        writer.add_page(page)

    draw_map = {}  # page_index -> [ops]
    for item in placements:
        geometry = item.get("geometry") or {}
        p = max(0, min(num_pages - 1, int(geometry.get("page", 1)) - 1))
        draw_map.setdefault(p, []).append(_draw_op(item["kind"], geometry, item["value"]))

    for pidx, ops in sorted(draw_map.items()):
        page = reader.pages[pidx]
        overlay_pdf = _overlay_page(float(page.mediabox.width), float(page.mediabox.height), ops)
        writer.pages[pidx].merge_page(PdfReader(BytesIO(overlay_pdf)).pages[0])

    _certificate(writer, {**audit, "sha256_original": hashlib.sha256(template_pdf).hexdigest()})

    out_buf = BytesIO()
    writer.write(out_buf)
    final_bytes = out_buf.getvalue()
    return final_bytes, hashlib.sha256(final_bytes).hexdigest()
