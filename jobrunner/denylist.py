"""
Best-effort denylist for submitted commands and scripts.

This is not a sandbox. It rejects a handful of obviously destructive
patterns and is checked both at submission and again before every run,
since a stored script body can change after the job was created.
"""

import re
from typing import Optional, Pattern, Sequence

from jobrunner.models import ScriptKind


FORBIDDEN_PATTERNS: Sequence[Pattern] = (
    re.compile(r'(^|\s)sudo(\s|$)', re.IGNORECASE),
    re.compile(r'rm\s+-rf', re.IGNORECASE),
    re.compile(r':\s*\(\)\s*\{\s*:\s*\|\s*:\s*&?\s*;?\s*\}'),  # fork bomb
    re.compile(r'dd\s+if=', re.IGNORECASE),
    re.compile(r'mkfs\.', re.IGNORECASE),
)

# Extra patterns only meaningful inside node scripts
NODE_FORBIDDEN_PATTERNS: Sequence[Pattern] = (
    re.compile(r'''execSync\s*\(\s*['"`]\s*sudo''', re.IGNORECASE),
    re.compile(r'''rmSync\s*\(\s*['"`]/['"`]'''),
)


def is_forbidden(content: Optional[str], kind: str = ScriptKind.BASH,
                 patterns: Optional[Sequence[Pattern]] = None) -> bool:
    """
    Check content against the denylist.

    Args:
        content: Command line or script body
        kind: ScriptKind of the content (inline commands are 'bash')
        patterns: Override the default pattern set

    Returns:
        True if any pattern matches
    """
    if not content:
        return False

    active = list(patterns if patterns is not None else FORBIDDEN_PATTERNS)
    if patterns is None and kind == ScriptKind.NODE:
        active.extend(NODE_FORBIDDEN_PATTERNS)

    return any(p.search(content) for p in active)
