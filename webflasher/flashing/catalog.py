"""Project catalog and page configuration documents"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class FirmwareEntry(BaseModel):
    """One image of a project and the flash address it is written to"""
    path: str
    offset: str = "0x0"

    @property
    def offset_address(self) -> int:
        # int(x, 0) accepts both "0x10000" and "65536"
        return int(self.offset, 0)

    @field_validator("offset", mode="before")
    @classmethod
    def normalize_offset(cls, v: object) -> str:
        if isinstance(v, int):
            return hex(v)
        value = str(v).strip() or "0x0"
        int(value, 0)
        return value


class Project(BaseModel):
    """Flashable project as listed in config.json"""
    name: str
    description: Dict[str, str] = Field(default_factory=dict)
    firmware: Union[str, List[FirmwareEntry]]
    enabled: bool = True
    version: Optional[str] = None
    badge: Optional[str] = None
    docs: Optional[str] = None

    @property
    def firmware_entries(self) -> List[FirmwareEntry]:
        """Single-file projects flash at offset 0x0"""
        if isinstance(self.firmware, str):
            return [FirmwareEntry(path=self.firmware)]
        return list(self.firmware)

    def describe(self, lang: str = "en") -> str:
        return self.description.get(lang) or self.description.get("en", "")


class ProjectCatalog(BaseModel):
    projects: List[Project] = Field(default_factory=list)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ProjectCatalog":
        with open(path, "r", encoding="utf-8") as f:
            catalog = cls.model_validate(json.load(f))
        logger.info(f"Loaded {len(catalog.projects)} project(s) from {path}")
        return catalog

    def find(self, name: str) -> Optional[Project]:
        for project in self.projects:
            if project.name == name:
                return project
        return None

    @property
    def enabled_projects(self) -> List[Project]:
        return [p for p in self.projects if p.enabled]


class AudioFeedbackConfig(BaseModel):
    enabled: bool = False
    verbosity: str = "normal"
    volume: float = Field(default=0.7, ge=0.0, le=1.0)
    events: Dict[str, str] = Field(default_factory=dict)


class PageConfig(BaseModel):
    """Branding/behaviour document; only the parts the flasher uses"""
    audio_feedback: AudioFeedbackConfig = Field(default_factory=AudioFeedbackConfig)
    analytics: bool = False
    languages: List[str] = Field(default_factory=lambda: ["en"])
    default_language: str = "en"

    @classmethod
    def load(cls, path: Union[str, Path]) -> "PageConfig":
        """Missing page config means defaults (audio and analytics off)"""
        p = Path(path)
        if not p.exists():
            logger.info(f"Page config {path} not found, using defaults")
            return cls()
        with open(p, "r", encoding="utf-8") as f:
            return cls.model_validate(json.load(f))
