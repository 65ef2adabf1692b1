"""
Infographic style selection.

Picks a layout template from the shape of the post content and builds the
image prompt for it.
"""

import re
from typing import List

from .interfaces import InfographicStyle

MAX_STEPS = 6
MAX_HEADLINE_LENGTH = 100

_STEP_RE = re.compile(r"^(?:\d+\.|[-•→])\s*(.+)$")
_NUMBER_RE = re.compile(r"\b(?:\d{1,3}(?:,\d{3})+|\d+(?:\.\d+)?)(?:%|\s*(?:ms|s|m|h|K|M|B)\b)?")
_YEAR_RE = re.compile(r"\b(?:19|20)\d{2}\b")
_PERCENT_RE = re.compile(r"\b\d+(?:\.\d+)?%")
_COMPARISON_RE = re.compile(r"\b(?:vs\.?|versus|compared to|RAG)\b", re.IGNORECASE)

TEMPLATES = (
    "comparison",
    "timeline",
    "kpi_dashboard",
    "single_stat",
    "educational_steps",
)


def extract_steps(lines: List[str]) -> List[str]:
    """Bulleted or numbered lines, without their markers."""
    steps = []
    for line in lines:
        match = _STEP_RE.match(line)
        if match:
            steps.append(match.group(1).strip())
        if len(steps) >= MAX_STEPS:
            break
    return steps


class KeywordStyleSelector:
    """Selects a template from keywords, numbers and list structure.

    Rules, first match wins:
    - comparison: the text contrasts two approaches
    - timeline: years appear and there is no step list
    - kpi_dashboard: three or more numbers and no step list
    - single_stat: a percentage with at most two numbers and no step list
    - educational_steps: everything else
    """

    def select(self, content: str) -> InfographicStyle:
        text = content.replace("\r", "")
        lines = [line.strip() for line in text.split("\n") if line.strip()]
        headline = re.sub(r"[\"']", "", lines[0] if lines else "Tech Insights")[:MAX_HEADLINE_LENGTH]

        steps = extract_steps(lines)
        numbers = [m.group(0) for m in _NUMBER_RE.finditer(text)][:MAX_STEPS]

        if _COMPARISON_RE.search(text):
            template = "comparison"
        elif _YEAR_RE.search(text) and not steps:
            template = "timeline"
        elif len(numbers) >= 3 and not steps:
            template = "kpi_dashboard"
        elif _PERCENT_RE.search(text) and len(numbers) <= 2 and not steps:
            template = "single_stat"
        else:
            template = "educational_steps"

        key_points = steps or lines[1:4]
        return InfographicStyle(
            template=template,
            headline=headline,
            key_points=key_points[:MAX_STEPS],
            metrics=numbers[:3],
        )


def build_image_prompt(style: InfographicStyle) -> str:
    """Image prompt for the chosen template."""
    points = "; ".join(style.key_points[:MAX_STEPS])
    metrics = ", ".join(style.metrics)
    layouts = {
        "comparison": "side-by-side comparison of the standard and the improved approach",
        "timeline": "horizontal timeline with milestone points",
        "kpi_dashboard": f"dashboard of metric cards showing {metrics}",
        "single_stat": f"single hero statistic {style.metrics[0] if style.metrics else ''}".strip(),
        "educational_steps": "numbered illustrated steps",
    }
    prompt = (
        f'Clean professional infographic titled "{style.headline}", '
        f"{layouts.get(style.template, layouts['educational_steps'])}, "
        "white background, minimal text, vertical 4:5 aspect"
    )
    if points:
        prompt += f". Key points: {points}"
    return prompt
