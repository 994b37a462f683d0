"""
Prompt template rendering.

Templates use ``${{name}}`` placeholders. Rendering is fail-soft: an
undefined variable renders as a visible ``[missing: name]`` marker and is
logged as a warning instead of aborting the render.
"""

import json
import re
from typing import Any, Dict, List, Mapping

from .logger import get_logger

logger = get_logger(__name__)

VARIABLE_PATTERN = re.compile(r"\$\{\{\s*([A-Za-z0-9_.:/\-]+)\s*\}\}")
MISSING_PLACEHOLDER = "[missing: {name}]"


def _to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def extract_variables(template: str) -> List[str]:
    """Names referenced by a template, in order of first use."""
    names: List[str] = []
    for match in VARIABLE_PATTERN.finditer(template or ""):
        if match.group(1) not in names:
            names.append(match.group(1))
    return names


def render_template(template: str, variables: Mapping[str, Any]) -> str:
    """Substitute ``${{var}}`` placeholders from ``variables``."""
    missing: List[str] = []

    def substitute(match: "re.Match") -> str:
        name = match.group(1)
        if name in variables and variables[name] is not None:
            return _to_text(variables[name])
        missing.append(name)
        return MISSING_PLACEHOLDER.format(name=name)

    rendered = VARIABLE_PATTERN.sub(substitute, template or "")
    if missing:
        logger.warning("Template references undefined variables", extra={
            "missing_variables": sorted(set(missing))
        })
    return rendered


def format_responses(outputs: Dict[str, str]) -> str:
    """Lay out model outputs as labelled blocks for a synthesis prompt."""
    return "\n\n".join(f"### {model_id}\n{text.strip()}" for model_id, text in outputs.items())
