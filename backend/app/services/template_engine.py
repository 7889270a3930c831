"""Template variable resolution for prompt text.

Tokens look like {{name}}, {{q.prompt.name}} or {{q.ref[<uuid>].field}}.
Variables are layered, later layers overriding earlier ones:

1. prompt fields (input_admin_prompt, output_response, ...)
2. static system variables (q.today, q.user.name, ...)
3. stored system variables on the prompt
4. user-defined prompt variables
5. variables supplied by the caller

Unknown tokens are left in place.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any

from app.db import PromptStore, prompt_store
from app.models import CurrentUser, PromptNode

logger = logging.getLogger(__name__)

MAX_ANCESTOR_DEPTH = 10

TOKEN_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
REF_PATTERN = re.compile(
    r"\{\{q\.ref\[([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\]\.([a-z_.]+)\}\}",
    re.IGNORECASE,
)

PROMPT_FIELDS = (
    "input_admin_prompt",
    "input_user_prompt",
    "admin_prompt_result",
    "user_prompt_result",
    "output_response",
)

REF_FIELDS = (
    "output_response",
    "user_prompt_result",
    "input_admin_prompt",
    "input_user_prompt",
    "prompt_name",
)


def apply_template(template: str | None, variables: dict[str, str]) -> str:
    """Replace every known {{token}} in a template in a single pass.

    q.ref ids are matched case-insensitively. Substituted values are not
    scanned again.
    """
    if not template:
        return ""

    def replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in variables:
            return variables[key]
        ref = REF_PATTERN.fullmatch(match.group(0))
        if ref:
            normalized = f"q.ref[{ref.group(1).lower()}].{ref.group(2)}"
            if normalized in variables:
                return variables[normalized]
        return match.group(0)

    return TOKEN_PATTERN.sub(replace, template)


def extract_referenced_ids(*texts: str | None) -> list[str]:
    """Collect the distinct prompt ids referenced by q.ref tokens, lowercased."""
    ids: dict[str, None] = {}
    for text in texts:
        if not text:
            continue
        for match in REF_PATTERN.finditer(text):
            ids[match.group(1).lower()] = None
    return list(ids)


def build_static_variables(
    prompt: PromptNode,
    user: CurrentUser,
    parent_name: str = "",
    toplevel_name: str = "",
    now: datetime | None = None,
) -> dict[str, str]:
    """Runtime q.* variables."""
    now = now or datetime.now(timezone.utc)
    user_name = user.name or (user.email.split("@")[0] if user.email else "") or "Unknown"
    return {
        "q.today": now.date().isoformat(),
        "q.now": now.isoformat(),
        "q.year": str(now.year),
        "q.month": now.strftime("%B"),
        "q.user.name": user_name,
        "q.user.email": user.email or "",
        "q.toplevel.prompt.name": toplevel_name or prompt.prompt_name,
        "q.parent.prompt.name": parent_name,
        "q.prompt.name": prompt.prompt_name,
        "q.prompt.id": prompt.row_id,
    }


def _stringify(value: Any) -> str:
    return "" if value is None else str(value)


class TemplateEngine:
    """Builds the layered variable map for a prompt."""

    def __init__(self, store: PromptStore | None = None):
        self.store = store or prompt_store

    async def ancestor_names(self, prompt: PromptNode) -> tuple[str, str]:
        """Return (parent name, top-level name) by walking parent pointers."""
        if not prompt.parent_row_id:
            return "", prompt.prompt_name

        parent = await self.store.get_prompt(prompt.parent_row_id, include_deleted=True)
        if parent is None:
            return "", prompt.prompt_name

        toplevel = parent
        depth = 0
        while toplevel.parent_row_id and depth < MAX_ANCESTOR_DEPTH:
            ancestor = await self.store.get_prompt(toplevel.parent_row_id, include_deleted=True)
            if ancestor is None:
                break
            toplevel = ancestor
            depth += 1
        return parent.prompt_name, toplevel.prompt_name

    async def build_variables(
        self,
        prompt: PromptNode,
        user: CurrentUser,
        template_variables: dict[str, Any] | None = None,
        scan_texts: tuple[str | None, ...] = (),
    ) -> dict[str, str]:
        """Build the variable map used to render a prompt's text.

        Args:
            prompt: The prompt being run
            user: The caller, for q.user.* variables
            template_variables: Caller-supplied overrides
            scan_texts: Extra texts to scan for q.ref tokens (user message,
                assistant instructions)
        """
        variables: dict[str, str] = {
            field: getattr(prompt, field) or "" for field in PROMPT_FIELDS
        }

        parent_name, toplevel_name = await self.ancestor_names(prompt)
        variables.update(build_static_variables(prompt, user, parent_name, toplevel_name))

        for key, value in prompt.system_variables.items():
            if value is not None and value != "":
                variables[key] = str(value)

        for variable in await self.store.list_variables(prompt.row_id):
            variables[variable.variable_name] = (
                variable.variable_value or variable.default_value or ""
            )

        for key, value in (template_variables or {}).items():
            variables[key] = _stringify(value)

        referenced = extract_referenced_ids(
            prompt.input_admin_prompt, prompt.input_user_prompt, *scan_texts
        )
        if referenced:
            variables.update(await self._resolve_references(referenced, prompt.owner_id))

        return variables

    async def _resolve_references(self, prompt_ids: list[str], owner_id: str) -> dict[str, str]:
        resolved: dict[str, str] = {}
        for prompt_id in prompt_ids:
            ref = await self.store.get_prompt(prompt_id, owner_id)
            if ref is None:
                logger.debug(f"q.ref target {prompt_id} not found")
                continue
            prefix = f"q.ref[{prompt_id}]"
            for field in REF_FIELDS:
                resolved[f"{prefix}.{field}"] = getattr(ref, field) or ""
            for key, value in ref.system_variables.items():
                resolved[f"{prefix}.{key}"] = _stringify(value)
        logger.info(f"Resolved {len(resolved)} q.ref variables from {len(prompt_ids)} prompt(s)")
        return resolved


# Global engine instance
template_engine = TemplateEngine()
