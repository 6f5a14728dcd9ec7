from __future__ import annotations

import json
from typing import Any, Optional


_REPLACEMENTS = {
    "\u2014": "-",  # em dash
    "\u2013": "-",  # en dash
    "\u00a0": " ",  # no-break space
    "\ufeff": "",  # BOM left behind by some editors
}


def sanitize_prompt_text(text: Optional[str]) -> Optional[str]:
    """Normalise punctuation in prompt file text and strip surrounding whitespace."""
    if text is None:
        return None
    return text.translate(str.maketrans(_REPLACEMENTS)).strip()


def dump_context(value: Any) -> str:
    """Render prompt context as indented JSON, keeping CJK text readable."""
    return json.dumps(value, ensure_ascii=False, indent=2, default=str)
