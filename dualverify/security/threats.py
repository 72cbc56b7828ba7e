"""Lightweight prompt-injection detection."""

import re


class InjectionDetector:
    """Detect common prompt-injection markers in caller-supplied text.

    Categories:
    - Instruction override ("ignore previous instructions")
    - System prompt extraction
    - Role hijacking / jailbreak personas
    - Delimiter smuggling (fake system/assistant turns)
    """

    INJECTION_PATTERNS = {
        "instruction_override": [
            r"ignore\s+(all\s+|any\s+)?(the\s+)?(previous|prior|above|earlier)\s+(instructions|prompts|rules)",
            r"disregard\s+(all\s+|any\s+)?(the\s+)?(previous|prior|above)\s+(instructions|rules|guidelines)",
            r"forget\s+(everything|all)\s+(you\s+were\s+told|above|before)",
        ],
        "prompt_extraction": [
            r"(reveal|print|show|repeat|output)\s+(your|the)\s+(system\s+prompt|hidden\s+instructions|initial\s+instructions)",
            r"what\s+(is|are)\s+your\s+(system\s+prompt|instructions)",
        ],
        "role_hijack": [
            r"you\s+are\s+now\s+(dan|in\s+developer\s+mode|unrestricted|jailbroken)",
            r"\bdo\s+anything\s+now\b",
            r"pretend\s+(that\s+)?you\s+(have\s+no|are\s+not\s+bound\s+by)\s+(restrictions|rules|guidelines)",
        ],
        "delimiter_smuggling": [
            r"<\|?\s*(im_start|im_end|system|endoftext)\s*\|?>",
            r"^\s*###\s*(system|assistant)\s*:",
            r"\[\s*/?\s*(INST|SYS)\s*\]",
        ],
    }

    def __init__(self):
        self._patterns = {
            category: [re.compile(p, re.IGNORECASE | re.MULTILINE) for p in patterns]
            for category, patterns in self.INJECTION_PATTERNS.items()
        }

    def scan(self, text: str) -> list[str]:
        """Return the injection categories found in ``text``."""
        if not text:
            return []
        return [
            category
            for category, patterns in self._patterns.items()
            if any(p.search(text) for p in patterns)
        ]
