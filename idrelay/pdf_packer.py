from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence

from PIL import Image, ImageDraw, ImageFont, ImageOps
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .layout import PAGE_H_PT, PAGE_W_PT, Placement
from .storage import Storage


@dataclass
class PDFComposeResult:
    pdf_path: Path
    meta_path: Path
    pairs: int


def stamp_label(im: Image.Image, text: str) -> Image.Image:
    """Draw a translucent badge with ``text`` in the top-right corner."""
    w, h = im.size
    font_size = max(32, int(min(w, h) * 0.05))
    pad = max(12, int(font_size * 0.35))
    box_w = int(font_size * (len(text) * 0.75) + pad * 2)
    box_h = int(font_size * 1.3)
    x = w - box_w - pad
    y = pad

    base = im.convert("RGBA")
    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    draw.rounded_rectangle([x, y, x + box_w, y + box_h], radius=10, fill=(0, 0, 0, 140))
    font = ImageFont.load_default(size=font_size)
    draw.text((x + pad, y + int(box_h * 0.1)), text, font=font, fill=(255, 255, 255, 255))
    return Image.alpha_composite(base, overlay).convert("RGB")


class PDFComposer:
    def __init__(self, storage: Storage, stamp_labels: bool = False):
        self.storage = storage
        self.stamp_labels = stamp_labels

    def _prepare(self, placement: Placement) -> Image.Image:
        with Image.open(placement.image_ref) as src:
            im = ImageOps.exif_transpose(src).convert("RGB")
        if placement.mirrored:
            im = ImageOps.mirror(im)
        # after mirroring, so the badge stays readable
        if self.stamp_labels:
            im = stamp_label(im, placement.side.upper())
        return im

    def compose(self, placements: Sequence[Placement], chat_id: str) -> PDFComposeResult:
        if not placements:
            raise ValueError("No images to compose")

        pdf_path, meta_path = self.storage.pdf_output_paths(chat_id)
        c = canvas.Canvas(str(pdf_path), pagesize=(PAGE_W_PT, PAGE_H_PT))

        items: List[Dict] = []
        for p in placements:
            im = self._prepare(p)
            iw, ih = im.size
            # fit inside the box, keep aspect ratio, center
            scale = min(p.box_w / iw, p.box_h / ih)
            rw, rh = iw * scale, ih * scale
            ox = p.box_x + (p.box_w - rw) / 2
            oy_top = p.box_y + (p.box_h - rh) / 2
            # reportlab measures y from the bottom edge
            oy = PAGE_H_PT - oy_top - rh
            c.drawImage(ImageReader(im), ox, oy, width=rw, height=rh)
            items.append({
                "file": str(p.image_ref),
                "side": p.side,
                "row": p.row,
                "mirrored": p.mirrored,
                "box": [p.box_x, p.box_y, p.box_w, p.box_h],
                "placed": [round(ox, 2), round(oy, 2), round(rw, 2), round(rh, 2)],
            })
        c.showPage()
        c.save()

        rows = len({p.row for p in placements})
        self.storage.write_meta(meta_path, {
            "chat_id": chat_id,
            "page_size_pt": [PAGE_W_PT, PAGE_H_PT],
            "pairs": rows,
            "stamp_labels": self.stamp_labels,
            "items": items,
        })
        return PDFComposeResult(pdf_path=pdf_path, meta_path=meta_path, pairs=rows)
