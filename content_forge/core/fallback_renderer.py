"""
Local infographic renderer.

Used when the image provider returns no image data or fails. Output is a
deterministic SVG document: the same style always renders the same bytes,
and rendering never calls a billed service.
"""

from xml.sax.saxutils import escape

from .interfaces import GeneratedImage, InfographicStyle

WIDTH = 1200
HEIGHT = 1500
PADDING = 56
MAX_TITLE_LENGTH = 60
MAX_POINT_LENGTH = 80
MAX_POINTS = 3
FONT = "Inter, system-ui, sans-serif"
SVG_MIME_TYPE = "image/svg+xml"


def _truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


def render_svg(style: InfographicStyle) -> str:
    """Render a headline and up to three key points as SVG markup."""
    title = escape(_truncate(style.headline or "Tech Insights", MAX_TITLE_LENGTH))
    points = [escape(_truncate(p, MAX_POINT_LENGTH)) for p in style.key_points[:MAX_POINTS]]

    rows = []
    for i, point in enumerate(points):
        y = 420 + i * 140
        rows.append(
            f'  <circle cx="{PADDING + 32}" cy="{y - 10}" r="28" fill="#0A66C2" opacity="0.15"/>\n'
            f'  <text x="{PADDING + 32}" y="{y}" text-anchor="middle" font-family="{FONT}" '
            f'font-size="26" font-weight="700" fill="#0A66C2">{i + 1}</text>\n'
            f'  <text x="{PADDING + 90}" y="{y}" font-family="{FONT}" font-size="28" '
            f'fill="#111111">{point}</text>'
        )

    body = "\n".join(rows)
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<svg width="{WIDTH}" height="{HEIGHT}" viewBox="0 0 {WIDTH} {HEIGHT}" '
        'xmlns="http://www.w3.org/2000/svg">\n'
        '  <rect width="100%" height="100%" fill="#FFFFFF"/>\n'
        f'  <text x="{PADDING}" y="{PADDING + 96}" font-family="{FONT}" font-size="56" '
        f'font-weight="800" fill="#0A2540">{title}</text>\n'
        f'  <rect x="{PADDING}" y="{PADDING + 140}" width="{WIDTH - PADDING * 2}" height="4" '
        'fill="#0A66C2" opacity="0.3"/>\n'
        f"{body}\n"
        f'  <text x="{WIDTH // 2}" y="{HEIGHT - 24}" text-anchor="middle" font-family="{FONT}" '
        f'font-size="16" fill="#9CA3AF">{escape(style.template)}</text>\n'
        "</svg>\n"
    )


def render_fallback(style: InfographicStyle) -> GeneratedImage:
    """Render the fallback infographic as an image result."""
    return GeneratedImage(
        image_bytes=render_svg(style).encode("utf-8"),
        mime_type=SVG_MIME_TYPE,
        model_name="local-svg",
    )
