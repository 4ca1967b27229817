from __future__ import annotations


ASSESSMENT_KEYWORDS = (
    "assignment",
    "exam",
    "test",
    "quiz",
    "project",
    "due",
    "homework",
    "assessment",
    "submission",
    "midterm",
    "final",
    "essay",
    "paper",
    "presentation",
    "report",
)


def is_assessment(title: str | None, description: str | None) -> bool:
    text = f"{title or ''} {description or ''}".lower()
    return any(keyword in text for keyword in ASSESSMENT_KEYWORDS)
