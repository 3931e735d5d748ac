"""Specification discovery for speckflow.

Specifications live in ``<specs_directory>/NNN-name`` directories. Their
phase is always derived from the documents found inside.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List

from .errors import (
    ArtifactNotFound,
    InvalidSpecId,
    InvalidSpecName,
    SpecAlreadyExists,
    SpecDirectoryNotFound,
    SpecIOError,
    SpecNotFound,
)
from .models import ArtifactType, SpecArtifacts, SpecId, Specification, WorkflowPhase
from .speckflow_logging import log_spec_created


_SPEC_DIR_PATTERN = re.compile(r"^\d{3}-.+$")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def to_kebab(name: str) -> str:
    """Convert a display name into a kebab-case slug.

    >>> to_kebab("User Auth: OAuth2 Flow!")
    'user-auth-oauth2-flow'
    """
    return _NON_ALNUM.sub("-", name.strip().lower()).strip("-")


class SpecService:
    """Discovers and creates specification directories."""

    def __init__(self, specs_directory: Path | str):
        self.specs_directory = Path(specs_directory)

    def discover_specs(self) -> List[Specification]:
        """Return every ``NNN-name`` specification, sorted by number."""
        logger = logging.getLogger("speckflow.specs")
        if not self.specs_directory.is_dir():
            raise SpecDirectoryNotFound(self.specs_directory)

        specs: List[Specification] = []
        try:
            entries = list(self.specs_directory.iterdir())
        except OSError as e:
            raise SpecIOError(str(e)) from e

        for entry in entries:
            if not entry.is_dir() or not _SPEC_DIR_PATTERN.match(entry.name):
                continue
            try:
                specs.append(Specification.from_directory(entry))
            except InvalidSpecId as e:
                logger.warning("Skipping spec directory %s: %s", entry.name, e)

        specs.sort(key=lambda spec: (spec.number, spec.name))
        return specs

    def spec_directory(self, spec_id: SpecId) -> Path:
        return self.specs_directory / str(spec_id)

    def load_spec(self, spec_id: SpecId) -> Specification:
        directory = self.spec_directory(spec_id)
        if not directory.is_dir():
            raise SpecNotFound(str(spec_id))
        return Specification.from_directory(directory)

    def get_phase(self, spec_id: SpecId) -> WorkflowPhase:
        return self.load_spec(spec_id).phase

    def next_number(self) -> int:
        """Return one more than the highest spec number, or 1 when there are none."""
        if not self.specs_directory.is_dir():
            return 1
        specs = self.discover_specs()
        return max((spec.number for spec in specs), default=0) + 1

    def create_spec(self, number: int, name: str) -> Specification:
        """Create an empty specification directory."""
        if not name or "/" in name or "\\" in name:
            raise InvalidSpecName(name)
        spec_id = SpecId.new(number, name)
        directory = self.spec_directory(spec_id)
        if directory.exists():
            raise SpecAlreadyExists(str(spec_id))

        try:
            directory.mkdir(parents=True)
        except OSError as e:
            raise SpecIOError(str(e)) from e

        log_spec_created(str(spec_id), directory)
        return Specification.from_directory(directory)

    def artifact_path(self, spec_id: SpecId, artifact_type: ArtifactType) -> Path:
        """Resolve the path of an existing artifact."""
        path = self.spec_directory(spec_id) / artifact_type.filename
        if not path.is_file():
            raise ArtifactNotFound(artifact_type.filename)
        return path

    def artifacts(self, spec_id: SpecId) -> SpecArtifacts:
        return self.load_spec(spec_id).artifacts
