"""Pre-run guardrails applied to the first user message."""

from __future__ import annotations


class DenyKeywordGuardrail:
    """Rejects prompts containing any keyword listed as `deny: <keyword>`.

    Rules are given one per line; other lines are ignored. Matching is a
    case-insensitive substring test. Calling the instance returns True when
    the prompt is allowed.
    """

    def __init__(self, rules: str = "") -> None:
        self.denied: tuple[str, ...] = tuple(self._parse(rules))

    @staticmethod
    def _parse(rules: str) -> list[str]:
        keywords: list[str] = []
        for line in rules.splitlines():
            stripped = line.strip()
            if stripped.lower().startswith("deny:"):
                keyword = stripped[5:].strip().lower()
                if keyword:
                    keywords.append(keyword)
        return keywords

    def __call__(self, prompt: str) -> bool:
        lowered = prompt.lower()
        return not any(keyword in lowered for keyword in self.denied)
