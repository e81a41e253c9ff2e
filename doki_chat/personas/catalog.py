from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterator

from ..models import Persona
from ..prompts.json_loader import load_json_document

logger = logging.getLogger("doki_chat.personas")


def default_catalog_path() -> Path:
    return Path(__file__).with_name("data") / "personas.json"


class PersonaCatalog:
    """Read-only persona list, loaded once and keyed by persona id."""

    def __init__(self, personas: list[Persona]) -> None:
        self._order: list[str] = []
        self._by_id: dict[str, Persona] = {}
        for persona in personas:
            if persona.id in self._by_id:
                logger.warning("Duplicate persona id %r ignored", persona.id)
                continue
            self._by_id[persona.id] = persona
            self._order.append(persona.id)

    @classmethod
    def load(cls, path: Path | None = None) -> "PersonaCatalog":
        source = path or default_catalog_path()
        document = load_json_document(source)
        if document is None:
            raise RuntimeError(f"Persona catalog not found or unreadable: {source}")
        raw_items = document.get("personas") if isinstance(document, dict) else document
        if not isinstance(raw_items, list):
            raise RuntimeError(f"Persona catalog must be a list of personas: {source}")

        personas: list[Persona] = []
        for index, item in enumerate(raw_items):
            if not isinstance(item, dict):
                logger.warning("Skipping persona #%s in %s: not an object", index, source)
                continue
            try:
                personas.append(Persona.from_dict(item))
            except ValueError as exc:
                logger.warning("Skipping persona #%s in %s: %s", index, source, exc)
        logger.info("Loaded %s personas from %s", len(personas), source)
        return cls(personas)

    def get(self, persona_id: str) -> Persona | None:
        return self._by_id.get(persona_id)

    def require(self, persona_id: str) -> Persona:
        persona = self._by_id.get(persona_id)
        if persona is None:
            raise KeyError(f"Unknown persona: {persona_id}")
        return persona

    def all(self) -> list[Persona]:
        return [self._by_id[persona_id] for persona_id in self._order]

    def __iter__(self) -> Iterator[Persona]:
        return iter(self.all())

    def __len__(self) -> int:
        return len(self._order)
