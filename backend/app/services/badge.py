"""
SVG badge rendering.

Pure functions: the same (score, variant, style) always yields the same
bytes. A missing score is a normal input and renders the "unknown" badge.

Layout: a grey label box and a coloured message box side by side. Each box
is ``max(6 * len(text) + 10, minimum)`` pixels wide (50 for the label, 30 for
the message). ``flat`` badges have square corners, every other style has a
3px radius.
"""
from typing import Optional, Union

Score = Union[int, float]

VARIANTS = ("quality", "security", "coverage", "complexity")

LABELS = {
    "quality": "code quality",
    "security": "security",
    "coverage": "coverage",
    "complexity": "complexity",
}

# brightest green -> red
SCORE_COLORS = (
    (90, "#4c1"),
    (80, "#97ca00"),
    (70, "#a4a61d"),
    (60, "#dfb317"),
    (50, "#fe7d37"),
)
ERROR_COLOR = "#e05d44"
NEUTRAL_COLOR = "#9f9f9f"
LABEL_COLOR = "#555"

GRADE_COLORS = {
    "A": "#4c1",
    "B": "#97ca00",
    "C": "#dfb317",
    "D": "#fe7d37",
    "F": "#e05d44",
}

LABEL_MIN_WIDTH = 50
MESSAGE_MIN_WIDTH = 30

# Sentinel accepted wherever a score is; renders exactly like None.
UNKNOWN = None

_SVG_TEMPLATE = """<svg xmlns="http://www.w3.org/2000/svg" width="{total}" height="20">
        <linearGradient id="b" x2="0" y2="100%">
          <stop offset="0" stop-color="#bbb" stop-opacity=".1"/>
          <stop offset="1" stop-opacity=".1"/>
        </linearGradient>
        <clipPath id="a">
          <rect width="{total}" height="20" rx="{radius}" fill="#fff"/>
        </clipPath>
        <g clip-path="url(#a)">
          <path fill="{label_color}" d="M0 0h{label_width}v20H0z"/>
          <path fill="{color}" d="M{label_width} 0h{message_width}v20H{label_width}z"/>
          <path fill="url(#b)" d="M0 0h{total}v20H0z"/>
        </g>
        <g fill="#fff" text-anchor="middle" font-family="DejaVu Sans,Verdana,Geneva,sans-serif" font-size="110">
          <text x="{label_x}" y="150" fill="#010101" fill-opacity=".3" transform="scale(.1)" textLength="{label_length}">{label}</text>
          <text x="{label_x}" y="140" transform="scale(.1)" textLength="{label_length}">{label}</text>
          <text x="{message_x}" y="150" fill="#010101" fill-opacity=".3" transform="scale(.1)" textLength="{message_length}">{message}</text>
          <text x="{message_x}" y="140" transform="scale(.1)" textLength="{message_length}">{message}</text>
        </g>
      </svg>"""


def text_width(text: str, minimum: int) -> int:
    return max(len(text) * 6 + 10, minimum)


def _format_number(value: float) -> str:
    # 85.0 -> "85", 85.5 -> "85.5"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _escape(text: str) -> str:
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def score_color(score: Score) -> str:
    """Step function over the score; each threshold is inclusive."""
    for threshold, color in SCORE_COLORS:
        if score >= threshold:
            return color
    return ERROR_COLOR


def grade_color(grade: str) -> str:
    return GRADE_COLORS.get(grade.upper(), NEUTRAL_COLOR)


def create_svg_badge(label: str, message: str, color: str, style: str = "flat") -> str:
    label_width = text_width(label, LABEL_MIN_WIDTH)
    message_width = text_width(message, MESSAGE_MIN_WIDTH)
    total = label_width + message_width
    radius = "0" if style == "flat" else "3"

    return _SVG_TEMPLATE.format(
        total=total,
        radius=radius,
        label_color=LABEL_COLOR,
        color=color,
        label_width=label_width,
        message_width=message_width,
        # text coordinates are in tenths of a pixel (scale(.1))
        label_x=label_width * 5,
        message_x=(label_width * 2 + message_width) * 5,
        label_length=(label_width - 10) * 10,
        message_length=(message_width - 10) * 10,
        label=_escape(label),
        message=_escape(message),
    )


def render_unknown_badge(variant: str = "quality") -> str:
    """The fallback badge; style is ignored so every caller gets identical bytes."""
    return create_svg_badge(variant, "unknown", ERROR_COLOR, "flat")


def render_badge(
    score: Optional[Union[Score, str]],
    variant: str = "quality",
    style: str = "flat",
) -> str:
    """
    Render one badge.

    Args:
        score: 0-100 for quality/security/coverage, a letter grade for
            complexity; None (or UNKNOWN) when no analysis is available.
        variant: quality, security, coverage or complexity.
        style: "flat" for square corners, anything else for rounded.

    Raises:
        ValueError: for an unknown variant.
    """
    if variant not in LABELS:
        raise ValueError(f"Unknown badge variant: {variant}")

    if score is None or (variant == "complexity" and not score):
        return render_unknown_badge(variant)

    label = LABELS[variant]
    if variant == "complexity":
        grade = str(score)
        return create_svg_badge(label, grade, grade_color(grade), style)

    value = float(score)
    number = _format_number(score if isinstance(score, (int, float)) else value)
    message = f"{number}%" if variant == "coverage" else f"{number}/100"
    return create_svg_badge(label, message, score_color(value), style)
