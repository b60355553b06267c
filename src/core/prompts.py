from dataclasses import dataclass


@dataclass(frozen=True)
class SynthesisPrompt:
    """
    Declarative prompt set for one synthesis configuration.
    Placeholders: {current_news}, {historical_news}, {days_ago},
    {synthesis_type}, {core_thesis}.
    """
    name: str
    scoring_prompt: str
    development_prompt: str
    core_thesis: str


DEFAULT_CORE_THESIS = (
    "AI does not simply make everything more efficient: the synthesis of all "
    "disciplines (marketing, design, business, code) produces entirely new "
    "products and services and transforms how IT and agency service providers "
    "create value."
)

DEFAULT_SCORING_PROMPT = """Evaluate the connection between two news items.

NEWS A (current): {current_news}
NEWS B (historical, {days_ago} days old): {historical_news}
CONNECTION TYPE: {synthesis_type}

CORE THESIS:
{core_thesis}

Criteria:
1. originality (0-10): how unexpected or non-obvious is this connection?
2. relevance (0-10): how strongly does it bear on the core thesis?

Return ONLY a JSON object:
{"originality": <0-10>, "relevance": <0-10>, "reasoning": "<1-2 sentences>"}

JSON:"""

DEFAULT_DEVELOPMENT_PROMPT = """Develop an original synthesis insight from this connection.

CURRENT NEWS: {current_news}
HISTORICAL NEWS ({days_ago} days old): {historical_news}
CONNECTION TYPE: {synthesis_type}

CORE THESIS:
{core_thesis}

Write a concise commentary (2-4 sentences) that explains the connection
between both items and offers an insight that goes beyond either of them.

Return ONLY a JSON object with:
- headline: short, sharp headline
- content: the insight text
- historical_reference: short reference to the historical item
- core_thesis_alignment: one sentence on why this matters for the core thesis

JSON:"""


DEFAULT_PROMPT = SynthesisPrompt(
    name="default",
    scoring_prompt=DEFAULT_SCORING_PROMPT,
    development_prompt=DEFAULT_DEVELOPMENT_PROMPT,
    core_thesis=DEFAULT_CORE_THESIS,
)


def render_prompt(template: str, **values: object) -> str:
    """
    Fill {placeholder} markers without touching other braces in the template.
    """
    rendered = template
    for key, value in values.items():
        rendered = rendered.replace("{" + key + "}", str(value))
    return rendered
