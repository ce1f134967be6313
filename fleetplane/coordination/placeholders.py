"""Resolution of ``${zk:...}`` placeholders in endpoint templates.

A member advertises an endpoint template such as
``${zk:root/http}/git/fleet/``; the placeholder is replaced by the data of
the referenced coordination record. Relative paths resolve under the
container configuration root, absolute paths are read verbatim.
"""

from __future__ import annotations

import re

from fleetplane.coordination.paths import CONTAINER_CONFIG_ROOT
from fleetplane.coordination.service import CoordinationClient
from fleetplane.errors import NoNodeError, PlaceholderResolutionError

PLACEHOLDER_PATTERN = re.compile(r"\$\{zk:([^}]+)\}")

# Guards against records that reference each other
MAX_RESOLUTION_DEPTH = 8


def placeholder_path(reference: str) -> str:
    """Map a placeholder reference to an absolute record path."""
    reference = reference.strip()
    if not reference:
        raise PlaceholderResolutionError("Empty placeholder reference")
    if reference.startswith("/"):
        return reference
    return f"{CONTAINER_CONFIG_ROOT}/{reference}"


async def resolve_placeholders(client: CoordinationClient, template: str) -> str:
    """Substitute every ``${zk:...}`` placeholder in ``template``.

    Record data may itself contain placeholders; they are resolved too.

    Raises:
        PlaceholderResolutionError: If a referenced record is missing or
            placeholders nest too deeply
    """
    value = template
    for _ in range(MAX_RESOLUTION_DEPTH):
        references = PLACEHOLDER_PATTERN.findall(value)
        if not references:
            return value
        resolved: dict[str, str] = {}
        for reference in references:
            path = placeholder_path(reference)
            try:
                resolved[reference] = (await client.get_data(path)).decode("utf-8")
            except NoNodeError as e:
                raise PlaceholderResolutionError(
                    f"Could not resolve {template!r}: no record at {path}"
                ) from e
        value = PLACEHOLDER_PATTERN.sub(lambda m: resolved[m.group(1)], value)
    raise PlaceholderResolutionError(f"Placeholders nested too deeply in {template!r}")
