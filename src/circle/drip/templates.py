"""Drip campaign steps and their (deliberately short) e-mail bodies."""

from dataclasses import dataclass
from html import escape


@dataclass(frozen=True)
class DripStep:
    id: int
    delay_days: int
    subject: str
    template: str


STEPS: tuple[DripStep, ...] = (
    DripStep(1, 0, "Your free guide is here", "welcome"),
    DripStep(2, 2, "Three things that change this year", "crisis"),
    DripStep(3, 5, "Stop outsourcing routine calculations", "energy"),
    DripStep(4, 8, "Cutting structural calculation costs", "structure"),
    DripStep(5, 12, "Why members joined the circle", "social_proof"),
    DripStep(6, 16, "Every tool, one monthly plan", "offer"),
    DripStep(7, 21, "Last note from us", "final"),
)

_BODIES = {
    "welcome": (
        "Thanks for downloading the guide.",
        "Reply to this e-mail if anything in it is unclear.",
    ),
    "crisis": (
        "Did you get a chance to read the guide?",
        "Today: the three changes most offices overlook.",
    ),
    "energy": (
        "Energy calculations no longer need to go out of house.",
        "Members use the calculator at no extra cost.",
    ),
    "structure": (
        "Structural calculations can be run in-house with the right tools.",
        "Members generate calculation reports directly.",
    ),
    "social_proof": (
        "Here is what current members say about the circle.",
        "Most joined for the tools and stayed for the study sessions.",
    ),
    "offer": (
        "All tools and study sessions are included in one plan.",
        "Join whenever it suits you.",
    ),
    "final": (
        "This is the last e-mail in the series.",
        "You can still join the circle at any time.",
    ),
}


def render(step: DripStep, name: str, unsubscribe_url: str) -> tuple[str, str]:
    """(html, text) bodies for one step."""
    greeting = f"Hello {name}," if name else "Hello,"
    paragraphs = _BODIES.get(step.template, _BODIES["welcome"])

    text = "\n\n".join([greeting, *paragraphs, f"Unsubscribe: {unsubscribe_url}"])
    html = "".join(
        [
            "<!DOCTYPE html><html><head><meta charset=\"utf-8\"></head><body>",
            f"<p>{escape(greeting)}</p>",
            *(f"<p>{escape(p)}</p>" for p in paragraphs),
            f"<p><a href=\"{escape(unsubscribe_url)}\">Unsubscribe</a></p>",
            "</body></html>",
        ]
    )
    return html, text
