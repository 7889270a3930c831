"""JSON schema helpers for structured (action node) output."""

import copy
from typing import Any

DEFAULT_ACTION_SYSTEM_PROMPT = """You are an AI assistant that responds ONLY with valid JSON according to the provided schema.

CRITICAL INSTRUCTIONS:
1. Your response must be ONLY valid JSON - no markdown, no explanations, no additional text
2. Do not wrap your response in code blocks or backticks
3. Follow the exact schema structure provided
4. Include all required fields
5. Use appropriate data types as specified in the schema

{{schema_description}}

Respond with the JSON object now."""


def ensure_strict_compliance(schema: Any) -> Any:
    """Patch a JSON schema for strict structured output.

    Every object gets additionalProperties false and lists all of its
    properties as required, recursively through properties and array items.
    The input is not modified.
    """
    if not isinstance(schema, dict):
        return schema

    fixed = copy.copy(schema)

    if fixed.get("type") == "object" and isinstance(fixed.get("properties"), dict):
        fixed["additionalProperties"] = False
        fixed["required"] = list(fixed["properties"].keys())
        fixed["properties"] = {
            key: ensure_strict_compliance(value) for key, value in fixed["properties"].items()
        }

    if fixed.get("type") == "array" and "items" in fixed:
        fixed["items"] = ensure_strict_compliance(fixed["items"])

    return fixed


def format_schema_for_prompt(schema: dict[str, Any] | None) -> str:
    """Describe a schema in plain text for inclusion in a system prompt."""
    if not schema:
        return ""

    lines = ["Expected JSON Schema:"]
    required = set(schema.get("required") or [])

    if schema.get("type") == "object" and schema.get("properties"):
        lines.append("{")
        for key, prop in schema["properties"].items():
            marker = " (required)" if key in required else " (optional)"
            prop_type = prop.get("type", "any")

            if prop_type == "array" and prop.get("items"):
                items = prop["items"]
                lines.append(f'  "{key}": Array<{items.get("type", "object")}>{marker}')
                if items.get("properties"):
                    item_required = set(items.get("required") or [])
                    lines.append("    Each item: {")
                    for item_key, item_prop in items["properties"].items():
                        item_marker = " (required)" if item_key in item_required else ""
                        lines.append(f'      "{item_key}": {item_prop.get("type", "any")}{item_marker}')
                    lines.append("    }")
            elif prop_type == "object" and prop.get("properties"):
                lines.append(f'  "{key}": {{{marker}')
                for sub_key, sub_prop in prop["properties"].items():
                    lines.append(f'    "{sub_key}": {sub_prop.get("type", "any")}')
                lines.append("  }")
            else:
                enum_values = prop.get("enum")
                enum_text = f" (one of: {', '.join(map(str, enum_values))})" if enum_values else ""
                lines.append(f'  "{key}": {prop_type}{marker}{enum_text}')
        lines.append("}")
    elif schema.get("type") == "array":
        lines.append(f"Array<{(schema.get('items') or {}).get('type', 'any')}>")

    return "\n".join(lines)
