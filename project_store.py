"""
Persistence for project records.

The orchestrator only needs three operations: load every record, save one
record, delete one record. Each record is written whole.
"""

import asyncio
import copy
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Union

from data_models import Project

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when a project record cannot be read or written"""
    pass


class ProjectStore(ABC):
    """Key-value store of Project records keyed by project id"""

    @abstractmethod
    async def load_all(self) -> List[Project]:
        pass

    @abstractmethod
    async def save_one(self, project: Project) -> None:
        pass

    @abstractmethod
    async def delete_one(self, project_id: str) -> None:
        pass

    async def load(self, project_id: str) -> Optional[Project]:
        for project in await self.load_all():
            if project.id == project_id:
                return project
        return None


class InMemoryProjectStore(ProjectStore):
    """Store that keeps deep copies in a dict, so callers never share state with it"""

    def __init__(self):
        self._records: Dict[str, Project] = {}

    async def load_all(self) -> List[Project]:
        return [copy.deepcopy(p) for p in self._records.values()]

    async def save_one(self, project: Project) -> None:
        self._records[project.id] = copy.deepcopy(project)

    async def delete_one(self, project_id: str) -> None:
        self._records.pop(project_id, None)

    async def load(self, project_id: str) -> Optional[Project]:
        project = self._records.get(project_id)
        return copy.deepcopy(project) if project else None


class JsonProjectStore(ProjectStore):
    """One ``<project_id>.json`` file per project, written atomically"""

    def __init__(self, directory: Union[str, Path] = "projects"):
        self.directory = Path(directory)

    def _path(self, project_id: str) -> Path:
        return self.directory / f"{project_id}.json"

    def _read(self, path: Path) -> Project:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise StoreError(f"Invalid project file format: {path}")
        return Project.from_dict(data)

    async def load_all(self) -> List[Project]:
        if not self.directory.exists():
            return []

        loop = asyncio.get_event_loop()
        projects = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                projects.append(await loop.run_in_executor(None, self._read, path))
            except (OSError, ValueError, TypeError, KeyError, StoreError) as e:
                logger.error(f"Skipping unreadable project file {path}: {e}")
        return projects

    async def load(self, project_id: str) -> Optional[Project]:
        path = self._path(project_id)
        if not path.exists():
            return None
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, self._read, path)
        except (OSError, ValueError, TypeError, KeyError) as e:
            raise StoreError(f"Failed to load project {project_id}: {e}") from e

    async def save_one(self, project: Project) -> None:
        project_dict = project.to_dict()
        filename = self._path(project.id)
        temp_file = filename.with_suffix('.tmp')
        loop = asyncio.get_event_loop()

        def write_file():
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(temp_file, 'w', encoding='utf-8') as f:
                json.dump(project_dict, f, indent=2, ensure_ascii=False)
            temp_file.replace(filename)

        try:
            await loop.run_in_executor(None, write_file)
        except OSError as e:
            raise StoreError(f"Failed to save project {project.id}: {e}") from e
        logger.debug(f"Project {project.id} saved to {filename}")

    async def delete_one(self, project_id: str) -> None:
        path = self._path(project_id)
        try:
            path.unlink()
        except FileNotFoundError:
            logger.debug(f"Project {project_id} already absent")
        except OSError as e:
            raise StoreError(f"Failed to delete project {project_id}: {e}") from e
