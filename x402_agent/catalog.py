"""
Tool Catalog - the priced upstream endpoints the agent may call.

Loaded once from a JSON manifest ({"endpoints": [...]}) and read-only after.
"""

import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlparse

from .errors import ConfigurationError, UnknownToolError

logger = logging.getLogger("ToolCatalog")


@dataclass(frozen=True)
class ToolParameter:
    name: str
    required: bool = True
    description: str = ""


@dataclass(frozen=True)
class ToolDescriptor:
    id: str
    url: str
    method: str = "GET"
    estimated_cost_usd: Optional[float] = None
    description: str = ""
    parameters: Tuple[ToolParameter, ...] = field(default_factory=tuple)

    @property
    def path(self):
        return urlparse(self.url).path or self.url

    def missing_parameters(self, args):
        missing = []
        for param in self.parameters:
            if not param.required:
                continue
            value = args.get(param.name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(param.name)
        return missing

    def to_manifest(self):
        entry = {
            "id": self.id,
            "url": self.url,
            "method": self.method,
            "priceUsd": self.estimated_cost_usd,
            "description": self.description,
        }
        if self.parameters:
            entry["parameters"] = [asdict(p) for p in self.parameters]
        return entry

    @classmethod
    def from_manifest(cls, entry):
        try:
            tool_id = entry["id"]
            url = entry["url"]
        except KeyError as e:
            raise ConfigurationError(f"Tool manifest entry missing {e}: {entry!r}")
        price = entry.get("priceUsd")
        params = tuple(
            ToolParameter(
                name=p["name"],
                required=bool(p.get("required", True)),
                description=p.get("description", ""),
            )
            for p in entry.get("parameters", [])
        )
        return cls(
            id=tool_id,
            url=url,
            method=entry.get("method", "GET").upper(),
            estimated_cost_usd=float(price) if isinstance(price, (int, float)) else None,
            description=entry.get("description", ""),
            parameters=params,
        )


class ToolCatalog:
    def __init__(self, tools):
        self._tools = {}
        for tool in tools:
            if tool.id in self._tools:
                raise ConfigurationError(f"Duplicate tool id in manifest: {tool.id}")
            self._tools[tool.id] = tool

    @classmethod
    def from_manifest(cls, manifest):
        return cls(ToolDescriptor.from_manifest(e) for e in manifest.get("endpoints", []))

    @classmethod
    def load(cls, path):
        path = Path(path)
        if not path.exists():
            logger.warning(f"⚠️  Tool manifest not found at {path}, catalog is empty")
            return cls([])
        with open(path, "r", encoding="utf-8") as f:
            try:
                manifest = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigurationError(f"Invalid JSON in tool manifest {path}: {e}")
        catalog = cls.from_manifest(manifest)
        logger.info(f"🛠️  Loaded {len(catalog)} tools from {path.name}")
        return catalog

    def __len__(self):
        return len(self._tools)

    def __iter__(self):
        return iter(self._tools.values())

    def __contains__(self, tool_id):
        return tool_id in self._tools

    def get(self, tool_id):
        return self._tools.get(tool_id)

    def require(self, tool_id):
        tool = self._tools.get(tool_id)
        if tool is None:
            raise UnknownToolError(tool_id)
        return tool

    def match_path(self, path):
        """Find the tool whose URL path ends with `path` (proxy routing)."""
        wanted = (path or "").rstrip("/").lower()
        if not wanted:
            return None
        for tool in self._tools.values():
            if tool.url.rstrip("/").lower().endswith(wanted):
                return tool
        return None

    def to_manifest(self):
        return {"endpoints": [t.to_manifest() for t in self._tools.values()]}
