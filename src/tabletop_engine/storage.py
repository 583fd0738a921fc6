"""
Storage layer for the tabletop engine.
Handles persistence of encounters to JSON files.
"""

import logging
from pathlib import Path

from pydantic import ValidationError

from .exceptions import EncounterNotFoundError, StorageError
from .models import Encounter

logger = logging.getLogger("tabletop-engine")


class EncounterStorage:
    """Handles storage and retrieval of encounters, one JSON file each."""

    def __init__(self, data_dir: str | Path = "tabletop_data"):
        self.data_dir = Path(data_dir)
        logger.debug(f"📂 Initializing EncounterStorage with data_dir: {self.data_dir.resolve()}")
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.encounters_dir = self.data_dir / "encounters"
        self.encounters_dir.mkdir(exist_ok=True)

    def _encounter_file(self, encounter_id: str) -> Path:
        safe_id = "".join(c for c in encounter_id if c.isalnum() or c in "-_")
        if not safe_id:
            raise EncounterNotFoundError(encounter_id)
        return self.encounters_dir / f"{safe_id}.json"

    def save_encounter(self, encounter: Encounter) -> None:
        path = self._encounter_file(encounter.id)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(encounter.model_dump_json(indent=2), encoding="utf-8")
        tmp_path.replace(path)
        logger.debug(f"💾 Saved encounter {encounter.id} (round {encounter.round})")

    def load_encounter(self, encounter_id: str) -> Encounter:
        """Load an encounter by ID.

        Raises:
            EncounterNotFoundError: No file for this ID.
            StorageError: The file exists but cannot be parsed.
        """
        path = self._encounter_file(encounter_id)
        if not path.exists():
            raise EncounterNotFoundError(encounter_id)
        try:
            return Encounter.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as e:
            logger.error(f"❌ Corrupt encounter file {path}: {e}")
            raise StorageError(f"Encounter '{encounter_id}' could not be loaded", details={"path": str(path)}) from e

    def encounter_exists(self, encounter_id: str) -> bool:
        try:
            return self._encounter_file(encounter_id).exists()
        except EncounterNotFoundError:
            return False

    def list_encounters(self) -> list[Encounter]:
        """All readable encounters, newest first. Unreadable files are logged and skipped."""
        encounters = []
        for path in sorted(self.encounters_dir.glob("*.json")):
            try:
                encounters.append(Encounter.model_validate_json(path.read_text(encoding="utf-8")))
            except ValidationError as e:
                logger.error(f"❌ Skipping unreadable encounter file {path.name}: {e}")
        encounters.sort(key=lambda e: e.created_at, reverse=True)
        return encounters

    def delete_encounter(self, encounter_id: str) -> None:
        path = self._encounter_file(encounter_id)
        if not path.exists():
            raise EncounterNotFoundError(encounter_id)
        path.unlink()
        logger.debug(f"🗑️ Deleted encounter {encounter_id}")
