"""Project persistence.

The orchestrator only depends on the :class:`ProjectStore` protocol. Two
implementations ship: an in-memory store for tests and embedding, and a JSON
file store with one file per project.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from pydantic import ValidationError

from .errors import ProjectNotFound, ToolkitError
from .models import Project, StageStatus, utcnow

logger = logging.getLogger(__name__)

_PROJECT_ID_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")


class ProjectStore(Protocol):
    def get_project(self, project_id: str) -> Project: ...

    def get_stage_output(self, project_id: str, stage_id: int) -> Optional[str]: ...

    def set_stage_output(self, project_id: str, stage_id: int, text: str) -> None: ...

    def is_completed(self, project_id: str, stage_id: int) -> bool: ...

    def set_stage_status(
        self,
        project_id: str,
        stage_id: int,
        status: StageStatus,
        error: Optional[Dict[str, Any]] = None,
    ) -> None: ...


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug[:48] or "project"


def validate_project_id(project_id: str) -> str:
    if not _PROJECT_ID_RE.match(project_id):
        raise ProjectNotFound(f"Invalid project id '{project_id}'")
    return project_id


class InMemoryProjectStore:
    """Projects held in a dict. Reads observe the latest write."""

    def __init__(self) -> None:
        self._projects: Dict[str, Project] = {}

    def _exists(self, project_id: str) -> bool:
        return project_id in self._projects

    def _load(self, project_id: str) -> Project:
        try:
            return self._projects[project_id]
        except KeyError:
            raise ProjectNotFound(f"Project '{project_id}' not found") from None

    def _save(self, project: Project) -> None:
        project.updated_at = utcnow()
        self._projects[project.id] = project

    def create_project(
        self,
        name: str,
        description: str = "",
        *,
        idea: Optional[str] = None,
        project_id: Optional[str] = None,
        stages: Iterable[Tuple[int, str]] = (),
    ) -> Project:
        """Create and persist a new project.

        Args:
            name: Display name, also the basis of the generated id.
            description: Short description used by every stage prompt.
            idea: Longer project idea for the first stage.
            project_id: Explicit id; generated from ``name`` when omitted.
            stages: ``(number, name)`` pairs to pre-create as pending records.
        """
        if project_id is None:
            base = slugify(name)
            project_id = base
            suffix = 2
            while self._exists(project_id):
                project_id = f"{base}-{suffix}"
                suffix += 1
        else:
            validate_project_id(project_id)
            if self._exists(project_id):
                raise ToolkitError(f"Project '{project_id}' already exists")

        project = Project(id=project_id, name=name, description=description, idea=idea)
        for number, stage_name in stages:
            project.stage(number, stage_name)
        self._save(project)
        logger.info("Created project %s", project_id)
        return project

    def get_project(self, project_id: str) -> Project:
        return self._load(project_id)

    def list_projects(self) -> List[Project]:
        return sorted(self._projects.values(), key=lambda p: p.created_at)

    def get_stage_output(self, project_id: str, stage_id: int) -> Optional[str]:
        record = self._load(project_id).find_stage(int(stage_id))
        if record is None or record.status != StageStatus.COMPLETED:
            return None
        return record.content

    def set_stage_output(self, project_id: str, stage_id: int, text: str) -> None:
        project = self._load(project_id)
        record = project.stage(int(stage_id))
        record.content = text
        record.status = StageStatus.COMPLETED
        record.error = None
        record.completed_at = record.updated_at = utcnow()
        self._save(project)

    def is_completed(self, project_id: str, stage_id: int) -> bool:
        record = self._load(project_id).find_stage(int(stage_id))
        return record is not None and record.status == StageStatus.COMPLETED

    def set_stage_status(
        self,
        project_id: str,
        stage_id: int,
        status: StageStatus,
        error: Optional[Dict[str, Any]] = None,
    ) -> None:
        project = self._load(project_id)
        record = project.stage(int(stage_id))
        record.status = status
        record.error = error
        record.updated_at = utcnow()
        self._save(project)


class JsonProjectStore(InMemoryProjectStore):
    """Projects persisted as ``<root>/<project_id>.json``.

    Loaded projects are kept in memory so a process always reads its own
    writes; every write replaces the file atomically.
    """

    def __init__(self, root: Optional[Path] = None) -> None:
        super().__init__()
        self.root = root or (Path.home() / ".ai-toolkit" / "projects")
        self.root.mkdir(parents=True, exist_ok=True)

    def _project_file(self, project_id: str) -> Path:
        return self.root / f"{validate_project_id(project_id)}.json"

    def _exists(self, project_id: str) -> bool:
        return project_id in self._projects or self._project_file(project_id).exists()

    def _load(self, project_id: str) -> Project:
        if project_id in self._projects:
            return self._projects[project_id]
        path = self._project_file(project_id)
        if not path.exists():
            raise ProjectNotFound(f"Project '{project_id}' not found in {self.root}")
        try:
            project = Project.from_json(path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            raise ToolkitError(f"Project file {path} is not valid: {exc}") from exc
        self._projects[project_id] = project
        return project

    def _save(self, project: Project) -> None:
        super()._save(project)
        path = self._project_file(project.id)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=f".{project.id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(project.to_json())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def list_projects(self) -> List[Project]:
        for path in self.root.glob("*.json"):
            project_id = path.stem
            if _PROJECT_ID_RE.match(project_id) and project_id not in self._projects:
                try:
                    self._load(project_id)
                except ToolkitError as exc:
                    logger.warning("Skipping unreadable project file %s: %s", path, exc)
        return super().list_projects()
