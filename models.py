import re
from enum import Enum
from typing import List, Optional, Dict, Any, Iterable
from pydantic import BaseModel, Field, field_validator

import config

_UNSAFE_FILENAME_CHARS = re.compile(r'[^a-zA-Z0-9]')


class TermNamespace(str, Enum):
    """The three independent taxonomy vocabularies."""
    GENRE = 'genre'
    MOOD = 'mood'
    THEME = 'theme'


def sanitize_filename(title: str) -> str:
    """Replace every non-alphanumeric character of a title with an underscore."""
    return _UNSAFE_FILENAME_CHARS.sub('_', title)


def clean_term_names(names: Optional[Iterable[str]]) -> List[str]:
    """Trim names, dropping empties, the "Unknown" sentinel and repeats."""
    cleaned = []
    for name in names or []:
        if not isinstance(name, str):
            continue
        name = name.strip()
        if not name or name == config.UNKNOWN_TERM or name in cleaned:
            continue
        cleaned.append(name)
    return cleaned


class ExtractionRecord(BaseModel):
    """A scraped song that has not been persisted yet."""
    title: str = config.UNKNOWN_TITLE
    author: str = Field(default=config.UNKNOWN_AUTHOR, alias='audioOwnerName')
    duration: str = config.UNKNOWN_DURATION
    detail_url: Optional[str] = Field(default=None, alias='detailUrl')
    cover_image_url: Optional[str] = Field(default=None, alias='coverImageUrl')
    audio_url: Optional[str] = Field(default=None, alias='audioUrl')
    genres: List[str] = []
    moods: List[str] = []
    themes: List[str] = []

    class Config:
        populate_by_name = True

    @field_validator('author', mode='before')
    @classmethod
    def default_blank_author(cls, value: Any) -> Any:
        # Blank owners are stored and looked up under the fallback name
        if value is None or (isinstance(value, str) and not value.strip()):
            return config.UNKNOWN_AUTHOR
        return value

    @property
    def filename(self) -> str:
        return f"{sanitize_filename(self.title)}.mp3"

    @property
    def cover_filename(self) -> Optional[str]:
        if not self.cover_image_url:
            return None
        return f"{sanitize_filename(self.title)}.jpg"

    def terms(self, namespace: TermNamespace) -> List[str]:
        """Persistable term names of one namespace, in scraped order."""
        namespace = TermNamespace(namespace)
        if namespace is TermNamespace.GENRE:
            return clean_term_names(self.genres)
        if namespace is TermNamespace.MOOD:
            return clean_term_names(self.moods)
        return clean_term_names(self.themes)

    def to_json(self) -> Dict[str, Any]:
        """Serialize with the key names used by the metadata and failure files."""
        data = self.model_dump(by_alias=True)
        data['filename'] = self.filename
        data['coverfilename'] = self.cover_filename
        return data

    @classmethod
    def from_scraped_data(cls, data: Dict[str, Any]) -> 'ExtractionRecord':
        """Create a record from a scraped or persisted dictionary."""
        return cls(
            title=data.get('title') or config.UNKNOWN_TITLE,
            author=data.get('audioOwnerName') or data.get('author') or config.UNKNOWN_AUTHOR,
            duration=data.get('duration') or config.UNKNOWN_DURATION,
            detail_url=data.get('detailUrl') or data.get('detail_url'),
            cover_image_url=data.get('coverImageUrl') or data.get('cover_image_url'),
            audio_url=data.get('audioUrl') or data.get('audio_url'),
            genres=clean_term_names(data.get('genres')),
            moods=clean_term_names(data.get('moods')),
            themes=clean_term_names(data.get('themes')),
        )


# ============================================================================
# API MODELS
# ============================================================================

class SongCreate(BaseModel):
    """Body of POST /api/song."""
    title: str
    url: Optional[str] = None
    duration: str = config.UNKNOWN_DURATION
    author: str = config.UNKNOWN_AUTHOR

    def to_record(self) -> ExtractionRecord:
        return ExtractionRecord(
            title=self.title,
            author=self.author,
            duration=self.duration or config.UNKNOWN_DURATION,
            audio_url=self.url,
        )


class SongBatchCreate(BaseModel):
    """Body of POST /api/songs."""
    songs: List[SongCreate]
