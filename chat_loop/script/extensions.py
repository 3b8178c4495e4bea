"""Project-specific bindings added to the script scope.

Extensions are loaded per invocation. A failing provider never fails the
script: the failure is logged and the script runs without its bindings.
"""

import inspect
import logging
from importlib.metadata import entry_points
from typing import Any, Mapping, Optional

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "chat_loop.extensions"


class ExtensionProvider:
    async def load(self, project_id: str) -> dict[str, Any]:
        raise NotImplementedError


class StaticExtensionProvider(ExtensionProvider):
    """Fixed bindings, shared by every project unless given per project.

    Usage:
        StaticExtensionProvider({"to_celsius": to_celsius})
        StaticExtensionProvider(per_project={"A1": {"crm": crm_client}})
    """

    def __init__(
        self,
        bindings: Optional[Mapping[str, Any]] = None,
        per_project: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ):
        self._bindings = dict(bindings or {})
        self._per_project = {k: dict(v) for k, v in (per_project or {}).items()}

    async def load(self, project_id: str) -> dict[str, Any]:
        return {**self._bindings, **self._per_project.get(project_id, {})}


class EntryPointExtensionProvider(ExtensionProvider):
    """Loads extensions advertised by installed packages.

    Each entry point in the ``chat_loop.extensions`` group must resolve to a
    callable taking the project id and returning a mapping of bindings (it
    may be async).
    """

    def __init__(self, group: str = ENTRY_POINT_GROUP):
        self.group = group

    async def load(self, project_id: str) -> dict[str, Any]:
        bindings: dict[str, Any] = {}
        for ep in entry_points(group=self.group):
            try:
                factory = ep.load()
                exported = factory(project_id)
                if inspect.isawaitable(exported):
                    exported = await exported
                bindings.update(exported or {})
            except Exception as e:
                logger.error(f"Failed to load extension '{ep.name}': {e}")
        return bindings


async def load_extensions(
    provider: Optional[ExtensionProvider], project_id: str
) -> dict[str, Any]:
    if provider is None:
        return {}
    try:
        extensions = await provider.load(project_id)
    except Exception as e:
        logger.error(f"Failed to load extensions for project {project_id}: {e}")
        return {}
    logger.debug(f"Loaded {len(extensions)} extension bindings for {project_id}")
    return extensions
