# prompts/prompt_renderer.py
"""Render chapter-pipeline prompt templates.

Templates live beside this module as `prompts/<agent_name>/*.j2`, with an
optional `prompts/<agent_name>/system.md` system prompt.

Contracts:

- Undefined variables raise at render time (`StrictUndefined`), so a template
  and its caller cannot silently drift apart.
- Auto-escaping is off; prompt text is not HTML.
- The `config` module is injected into every template as `config`.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any

import structlog
from jinja2 import Environment, FileSystemLoader, StrictUndefined

import config

logger = structlog.get_logger(__name__)

PROMPTS_PATH = Path(__file__).parent
_env = Environment(
    loader=FileSystemLoader(PROMPTS_PATH),
    autoescape=False,
    undefined=StrictUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=False,
)


def render_prompt(template_name: str, context: dict[str, Any]) -> str:
    """Render `template_name` (relative to `PROMPTS_PATH`) with `context`.

    Raises:
        jinja2.TemplateNotFound: If the template does not exist.
        jinja2.UndefinedError: If the template references a missing variable.
    """
    template = _env.get_template(template_name)
    return template.render(config=config, **context).strip()


@lru_cache(maxsize=16)
def get_system_prompt(agent_name: str) -> str:
    """Return `prompts/<agent_name>/system.md`, or an empty string when it is missing.

    Cached per process; call `get_system_prompt.cache_clear()` after editing prompt files.
    """
    system_path = PROMPTS_PATH / agent_name / "system.md"
    try:
        return system_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return ""
    except OSError as e:
        logger.warning("get_system_prompt: could not read system prompt", agent=agent_name, error=str(e))
        return ""
