"""Pydantic schemas and constants for langhelper."""
from typing import Optional, List
from pydantic import BaseModel, Field

# --- Constants ---
COURSES = {
    "toeic": "多益",
    "ielts": "雅思",
}

COURSE_LABELS = {
    "toeic": "多益 (TOEIC)",
    "ielts": "雅思 (IELTS)",
}

TOEIC_MAX_SCORE = 990
IELTS_MAX_SCORE = 90  # stored x10, 6.5 -> 65

DAILY_WORD_CHOICES = (5, 10, 15, 20)
PUSH_TIME_CHOICES = {
    "08:00": "早上 8:00",
    "12:00": "中午 12:00",
    "19:00": "晚上 7:00",
}

DEFAULT_DAILY_WORDS = 10
DEFAULT_PUSH_TIME = "08:00"
DEFAULT_TIMEZONE = "Asia/Taipei"


def course_name(course: str) -> str:
    return COURSES.get(course, course)


def display_level(course: str, level: int) -> float:
    """Human-facing score: IELTS levels are stored x10."""
    if course == "ielts":
        return level / 10.0
    return level


# --- Pydantic Models ---

class Example(BaseModel):
    en: str = ""
    zh: str = ""


class CandidateWord(BaseModel):
    word: str
    partOfSpeech: str = ""
    meaning: str = ""
    example: Example = Field(default_factory=Example)
    synonyms: List[str] = []
    antonyms: List[str] = []
    difficulty: str = ""
    category: str = ""


class Translation(BaseModel):
    word: str
    partOfSpeech: str = ""
    meaning: str = ""
    example: Example = Field(default_factory=Example)
    synonyms: List[str] = []
    antonyms: List[str] = []


class TranslationResponse(BaseModel):
    translations: List[Translation] = []


class UserConfig(BaseModel):
    userId: str
    displayName: str = ""
    course: str = ""
    level: int = 0
    dailyWords: int = 0
    pushTime: str = ""
    timezone: str = ""
    updatedAt: str = ""

    def is_complete(self) -> bool:
        return bool(self.course and self.level > 0 and self.dailyWords > 0 and self.pushTime)


class WordRecord(BaseModel):
    word: str
    partOfSpeech: str = ""
    translation: str = ""
    sentence: str = ""
    timestamp: str = ""


class UserVocabulary(BaseModel):
    userId: str
    date: str            # YYYY-MM-DD
    words: List[WordRecord] = []
    updatedAt: str = ""


class WordPushRequest(BaseModel):
    userId: str


class ReminderRequest(BaseModel):
    date: Optional[str] = None
