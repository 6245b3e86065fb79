"""Rendering of poll results and share artifacts: CSV, PNG charts, PDF reports and QR codes."""

import base64
import csv
import datetime
import io
import math
from urllib.parse import quote

import qrcode
from markupsafe import escape
from PIL import Image, ImageDraw, ImageFont
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.platypus import Image as PdfImage
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from polls import ValidationError

CHART_TYPES = ("bar", "pie", "line")

PALETTE = ["#4f46e5", "#f59e0b", "#10b981", "#ef4444", "#06b6d4", "#8b5cf6"]

WIDTH = 900
CHART_HEIGHT = 360
ROW_HEIGHT = 28


def footer_text(realtime, today=None):
    if realtime:
        return "Results are real-time."
    today = today or datetime.date.today()
    return f"Results are a snapshot as of {today.isoformat()}."


def results_csv(numerical_summary):
    buf = io.StringIO()
    writer = csv.writer(buf, lineterminator="\n")
    writer.writerow(["Option", "Votes", "Percentage"])
    for row in numerical_summary:
        writer.writerow([row["option"], row["votes"], f"{row['percentage']:.2f}"])
    return buf.getvalue()


# ---------------- PNG ----------------

def _font(size):
    return ImageFont.load_default(size=size)


def _draw_bar(draw, box, chart_data):
    left, top, right, bottom = box
    peak = max([d["value"] for d in chart_data] + [1])
    slot = (right - left) / max(len(chart_data), 1)
    font = _font(14)
    for i, d in enumerate(chart_data):
        height = (bottom - top - 30) * d["value"] / peak
        x0 = left + i * slot + slot * 0.15
        x1 = left + (i + 1) * slot - slot * 0.15
        draw.rectangle([x0, bottom - 20 - height, x1, bottom - 20], fill=PALETTE[i % len(PALETTE)])
        draw.text((x0, bottom - 40 - height), str(d["value"]), fill="black", font=font)
        draw.text((x0, bottom - 16), d["name"][:18], fill="black", font=font)
    draw.line([left, bottom - 20, right, bottom - 20], fill="black")


def _draw_pie(draw, box, chart_data):
    left, top, right, bottom = box
    total = sum(d["value"] for d in chart_data)
    size = min(right - left, bottom - top) - 10
    pie = [left, top, left + size, top + size]
    font = _font(14)
    if total == 0:
        draw.ellipse(pie, outline="#999999")
        draw.text((left + size / 3, top + size / 2), "No votes yet", fill="#666666", font=font)
    else:
        start = -90.0
        for i, d in enumerate(chart_data):
            if not d["value"]:
                continue
            sweep = 360.0 * d["value"] / total
            draw.pieslice(pie, start, start + sweep, fill=PALETTE[i % len(PALETTE)], outline="white")
            start += sweep
    legend_x = left + size + 30
    for i, d in enumerate(chart_data):
        y = top + i * 26
        draw.rectangle([legend_x, y, legend_x + 16, y + 16], fill=PALETTE[i % len(PALETTE)])
        draw.text((legend_x + 24, y), f"{d['name']} ({d['value']})", fill="black", font=font)


def _draw_line(draw, box, chart_data):
    left, top, right, bottom = box
    peak = max([d["value"] for d in chart_data] + [1])
    font = _font(14)
    n = len(chart_data)
    step = (right - left - 40) / max(n - 1, 1)
    points = []
    for i, d in enumerate(chart_data):
        x = left + 20 + i * step
        y = bottom - 20 - (bottom - top - 40) * d["value"] / peak
        points.append((x, y))
        draw.text((x - 10, bottom - 16), d["name"][:12], fill="black", font=font)
        draw.text((x - 4, y - 22), str(d["value"]), fill="black", font=font)
    if len(points) > 1:
        draw.line(points, fill=PALETTE[0], width=3)
    for x, y in points:
        draw.ellipse([x - 4, y - 4, x + 4, y + 4], fill=PALETTE[0])
    draw.line([left, bottom - 20, right, bottom - 20], fill="black")


CHART_RENDERERS = {"bar": _draw_bar, "pie": _draw_pie, "line": _draw_line}


def chart_png(chart_data, chart_type="bar"):
    if chart_type not in CHART_RENDERERS:
        raise ValidationError(f"Unknown chart type '{chart_type}'. Supported: {', '.join(CHART_TYPES)}")
    img = Image.new("RGB", (WIDTH, CHART_HEIGHT), "white")
    CHART_RENDERERS[chart_type](ImageDraw.Draw(img), (30, 20, WIDTH - 30, CHART_HEIGHT - 10), chart_data)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def results_png(poll, chart_data, numerical_summary, chart_type="bar", realtime=True):
    chart = Image.open(io.BytesIO(chart_png(chart_data, chart_type)))
    header = 90
    table = ROW_HEIGHT * (len(numerical_summary) + 1) + 20
    img = Image.new("RGB", (WIDTH, header + CHART_HEIGHT + table + 50), "white")
    draw = ImageDraw.Draw(img)

    draw.text((30, 20), f"Poll Results: {poll['title']}", fill="black", font=_font(26))
    if poll["description"]:
        draw.text((30, 56), poll["description"][:110], fill="#444444", font=_font(16))
    img.paste(chart, (0, header))

    font = _font(16)
    y = header + CHART_HEIGHT + 10
    for cells in [("Option", "Votes", "Percentage")] + [
            (r["option"], str(r["votes"]), f"{r['percentage']:.2f}%") for r in numerical_summary]:
        draw.text((30, y), cells[0][:60], fill="black", font=font)
        draw.text((WIDTH - 300, y), cells[1], fill="black", font=font)
        draw.text((WIDTH - 160, y), cells[2], fill="black", font=font)
        y += ROW_HEIGHT
        draw.line([30, y - 6, WIDTH - 30, y - 6], fill="#dddddd")

    note = footer_text(realtime)
    width = draw.textlength(note, font=font)
    draw.text(((WIDTH - width) / 2, y + 15), note, fill="#555555", font=font)

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


# ---------------- PDF ----------------

def results_pdf(poll, chart_data, numerical_summary, chart_type="bar", realtime=True):
    chart = chart_png(chart_data, chart_type)
    buf = io.BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=A4, title=f"Poll Results for {poll['title']}")
    styles = getSampleStyleSheet()

    story = [Paragraph(f"Poll Results: {escape(poll['title'])}", styles["Title"])]
    if poll["description"]:
        story.append(Paragraph(escape(poll["description"]), styles["Normal"]))
    story.append(Spacer(1, 0.5 * cm))

    width = doc.width
    story.append(PdfImage(io.BytesIO(chart), width=width, height=width * CHART_HEIGHT / WIDTH))
    story.append(Spacer(1, 0.5 * cm))

    rows = [["Option", "Votes", "Percentage"]] + [
        [Paragraph(escape(r["option"]), styles["Normal"]), r["votes"], f"{r['percentage']:.2f}%"]
        for r in numerical_summary
    ]
    table = Table(rows, colWidths=[width * 0.6, width * 0.2, width * 0.2])
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#f2f2f2")),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#dddddd")),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
    ]))
    story.append(table)
    story.append(Spacer(1, 0.7 * cm))
    story.append(Paragraph(f"<i>{footer_text(realtime)}</i>", styles["Normal"]))

    doc.build(story)
    return buf.getvalue()


# ---------------- QR / social ----------------

def qr_image(url, size=300):
    qr = qrcode.QRCode(border=1, box_size=10)
    qr.add_data(url)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#ffffff").get_image()
    return img.resize((size, size), Image.NEAREST)


def qr_png(url, size=300):
    buf = io.BytesIO()
    qr_image(url, size).save(buf, format="PNG")
    return buf.getvalue()


def qr_data_url(url, size=300):
    return "data:image/png;base64," + base64.b64encode(qr_png(url, size)).decode("ascii")


def social_share_links(url, text):
    encoded_url = quote(url, safe="")
    encoded_text = quote(text, safe="")
    return {
        "twitter": f"https://twitter.com/intent/tweet?text={encoded_text}&url={encoded_url}",
        "facebook": f"https://www.facebook.com/sharer/sharer.php?u={encoded_url}&quote={encoded_text}",
        "linkedin": f"https://www.linkedin.com/sharing/share-offsite/?url={encoded_url}&title={encoded_text}",
    }
