"""
utils/certificate_pdf.py
------------------------
Render a calibration certificate to PDF bytes (single A4 page, reportlab).
"""

from __future__ import annotations

import io
from typing import List, Optional, Tuple

from reportlab.lib.colors import HexColor
from reportlab.lib.pagesizes import A4
from reportlab.lib.units import cm
from reportlab.pdfgen import canvas

from utils.certificate_data import CertificateData

_ACCENT = "#1F3A5F"
_RULE = "#DDDDDD"


def _v(value: Optional[object]) -> str:
    return "-" if value is None or value == "" else str(value)


def _draw_section(c: canvas.Canvas, title: str, rows: List[Tuple[str, Optional[object]]],
                  left: float, y: float, width: float) -> float:
    c.setFillColor(HexColor(_ACCENT))
    c.setFont("Helvetica-Bold", 12)
    c.drawString(left, y, title)
    y -= 0.25 * cm
    c.setStrokeColor(HexColor(_RULE))
    c.line(left, y, left + width, y)
    y -= 0.6 * cm
    c.setFillColor(HexColor("#000000"))
    for key, val in rows:
        c.setFont("Helvetica-Bold", 10)
        c.drawString(left, y, f"{key}:")
        c.setFont("Helvetica", 10)
        c.drawString(left + 5.5 * cm, y, _v(val)[:80])
        y -= 0.55 * cm
    return y - 0.4 * cm


def render_certificate_pdf(data: CertificateData) -> bytes:
    buf = io.BytesIO()
    page_w, page_h = A4
    left = 2 * cm
    width = page_w - 4 * cm

    c = canvas.Canvas(buf, pagesize=A4)
    c.setTitle(f"Calibration Certificate {data.job_number}")

    y = page_h - 2.5 * cm
    c.setFillColor(HexColor(_ACCENT))
    c.setFont("Helvetica-Bold", 18)
    c.drawString(left, y, "ADAS Calibration Certificate")
    c.setFont("Helvetica", 10)
    c.drawRightString(left + width, y, f"Job #{data.job_number}")
    y -= 1.2 * cm

    y = _draw_section(c, "Workshop", [
        ("Workshop", data.workshop_name),
        ("Address", data.workshop_address),
        ("Operating workshop", data.operating_workshop),
    ], left, y, width)

    y = _draw_section(c, "Vehicle", [
        ("Make", data.vehicle_make),
        ("Model", data.vehicle_model),
        ("Registration", data.vehicle_registration),
        ("VIN", data.vin),
        ("Mileage", f"{data.vehicle_mileage} miles" if data.vehicle_mileage else None),
    ], left, y, width)

    y = _draw_section(c, "Calibration", [
        ("Date", data.date),
        ("Time", data.time),
        ("Technician", data.employee_name),
        ("Remote operator", data.remote_operator_name),
        ("Tool used", data.calibration_tool_used),
        ("System", data.system_name),
        ("Result", data.calibration_result),
        ("Pre-scan notes", data.pre_scan_notes),
        ("Post-scan notes", data.post_scan_notes),
    ], left, y, width)

    c.setFont("Helvetica-Oblique", 8)
    c.setFillColor(HexColor("#666666"))
    c.drawString(left, 1.5 * cm, "Generated automatically from the closed service ticket.")
    c.showPage()
    c.save()
    return buf.getvalue()
