"""Persistent multi-panel credential storage."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path

from pydantic import ValidationError

from .errors import ConfigurationError, LastPanelError, PanelNotFoundError, PersistenceError
from .models import LegacyPanelDocument, PanelConfig, PanelDocument

logger = logging.getLogger(__name__)

LEGACY_PANEL_NAME = "Default"


class PanelStore:
    """Thread-safe JSON-backed registry of named panels and the active one.

    Current layout:
        {"panels": [{"name", "panel_url", "api_key", "admin_key"?, "server_id"?}],
         "active_panel": "..."}

    Legacy layout (auto-migrated on load and rewritten immediately):
        {"panel_url", "api_key", "server_id"}
    """

    def __init__(self, path: str | Path):
        self._path = Path(path)
        self._lock = threading.RLock()
        self._loaded = False
        self._doc = PanelDocument()

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self.load()

    def load(self) -> None:
        """Read the panel document; a missing file means an empty store."""
        with self._lock:
            if not self._path.exists():
                self._doc = PanelDocument()
                self._loaded = True
                return
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8") or "{}")
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise ConfigurationError(f"Panel config {self._path} is not valid JSON: {e}") from e
            except OSError as e:
                raise ConfigurationError(f"Panel config {self._path} could not be read: {e}") from e
            if not isinstance(raw, dict):
                raise ConfigurationError(f"Panel config {self._path} must contain a JSON object")

            migrated = False
            try:
                if not raw.get("panels") and raw.get("panel_url"):
                    legacy = LegacyPanelDocument.model_validate(raw)
                    doc = PanelDocument(
                        panels=[
                            PanelConfig(
                                name=LEGACY_PANEL_NAME,
                                panel_url=legacy.panel_url,
                                api_key=legacy.api_key,
                                server_id=legacy.server_id,
                            )
                        ],
                        active_panel=LEGACY_PANEL_NAME,
                    )
                    migrated = True
                else:
                    doc = PanelDocument.model_validate(
                        {"panels": raw.get("panels") or [], "active_panel": raw.get("active_panel") or ""}
                    )
            except ValidationError as e:
                raise ConfigurationError(f"Panel config {self._path} has an invalid shape: {e}") from e

            names = [p.name for p in doc.panels]
            if len(names) != len(set(names)):
                raise ConfigurationError(f"Panel config {self._path} contains duplicate panel names")

            self._doc = doc
            self._loaded = True
            if migrated:
                logger.info("Migrated legacy single-panel config at %s", self._path)
                self._persist()

    def _persist(self) -> None:
        payload = {
            "panels": [p.model_dump(exclude_none=True) for p in self._doc.panels],
            "active_panel": self._doc.active_panel,
        }
        temp_path = self._path.with_suffix(f"{self._path.suffix}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(json.dumps(payload, ensure_ascii=True, indent=2), encoding="utf-8")
            os.chmod(temp_path, 0o600)
            temp_path.replace(self._path)
        except OSError as e:
            raise PersistenceError(f"Failed to write panel config {self._path}: {e}") from e

    def save(self) -> None:
        with self._lock:
            self._ensure_loaded()
            self._persist()

    def panels(self) -> list[PanelConfig]:
        with self._lock:
            self._ensure_loaded()
            return [p.model_copy() for p in self._doc.panels]

    def get(self, name: str) -> PanelConfig:
        with self._lock:
            self._ensure_loaded()
            return self._find(name).model_copy()

    def _find(self, name: str) -> PanelConfig:
        for panel in self._doc.panels:
            if panel.name == name:
                return panel
        raise PanelNotFoundError(name)

    def _active(self) -> PanelConfig | None:
        for panel in self._doc.panels:
            if panel.name == self._doc.active_panel:
                return panel
        if self._doc.panels:
            self._doc.active_panel = self._doc.panels[0].name
            return self._doc.panels[0]
        return None

    def active_panel(self) -> PanelConfig | None:
        """Active panel, falling back to the first one when the name is stale."""
        with self._lock:
            self._ensure_loaded()
            panel = self._active()
            return panel.model_copy() if panel else None

    def active_panel_name(self) -> str | None:
        panel = self.active_panel()
        return panel.name if panel else None

    def add_or_update(self, panel: PanelConfig) -> None:
        with self._lock:
            self._ensure_loaded()
            for idx, existing in enumerate(self._doc.panels):
                if existing.name == panel.name:
                    self._doc.panels[idx] = panel.model_copy()
                    break
            else:
                self._doc.panels.append(panel.model_copy())
                if len(self._doc.panels) == 1:
                    self._doc.active_panel = panel.name
            self._persist()

    def remove(self, name: str) -> None:
        with self._lock:
            self._ensure_loaded()
            self._find(name)
            if len(self._doc.panels) <= 1:
                raise LastPanelError(f"Cannot remove '{name}': it is the last configured panel")
            self._doc.panels = [p for p in self._doc.panels if p.name != name]
            if self._doc.active_panel == name:
                self._doc.active_panel = self._doc.panels[0].name if self._doc.panels else ""
            self._persist()

    def set_active(self, name: str) -> None:
        with self._lock:
            self._ensure_loaded()
            self._find(name)
            self._doc.active_panel = name
            self._persist()

    def update_active_server(self, server_id: str) -> None:
        with self._lock:
            self._ensure_loaded()
            panel = self._active()
            if panel is None:
                raise ConfigurationError("No active panel")
            panel.server_id = server_id
            self._persist()

    def is_configured(self) -> bool:
        with self._lock:
            self._ensure_loaded()
            panel = self._active()
            return panel is not None and bool(panel.panel_url) and bool(panel.api_key)

