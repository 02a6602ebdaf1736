"""LLM interaction (Ollama): translation and vocabulary generation."""
import os
import json
import re as _re
from typing import Optional, List

from log import get_logger

logger = get_logger("langhelper.llm")

import httpx
from opencc import OpenCC

from errors import GeneratorUnavailable
from models import CandidateWord, Translation, TranslationResponse, course_name, display_level

# --- Config ---
OLLAMA_URL = os.environ.get("OLLAMA_URL", "http://localhost:11434")
OLLAMA_MODEL = os.environ.get("OLLAMA_MODEL", "qwen2.5:14b-instruct-q3_K_M")
TRANSLATE_TIMEOUT = 60
GENERATE_TIMEOUT = 180

_s2twp = OpenCC('s2twp')


TRANSLATION_SYSTEM_PROMPT = """你是一個專業的雙向翻譯助手。請根據輸入的語言提供不同格式的翻譯。

1. 如果輸入是中文：提供所有常用的英文翻譯，包含詞性和例句。
2. 如果輸入是英文：提供完整的翻譯資訊，包含同義詞與反義詞。

一律只輸出以下 JSON 格式：
{
  "translations": [
    {
      "word": "原始單字",
      "partOfSpeech": "詞性，例如 adj.",
      "meaning": "翻譯",
      "example": {"en": "英文例句", "zh": "中文翻譯"},
      "synonyms": ["同義詞1", "同義詞2"],
      "antonyms": ["反義詞1"]
    }
  ]
}

注意事項：
1. 列出所有常用的意思和用法，意思太相近就不用特別列出
2. 每個意思都提供一個簡單且實用、適合日常對話的例句
3. 同義詞優先選擇常用字
4. 中文一律使用繁體中文
5. 確保輸出是有效的 JSON 格式"""

WORD_GENERATOR_SYSTEM_PROMPT = """你是一位專業的{course_label}英文單字老師。
請為目前{course_label}程度約 {level} 分的學生挑選 {count} 個適合的英文單字，
難度略高於學生目前的程度，盡量涵蓋不同主題與詞性，不要重複。

一律只輸出以下 JSON 格式：
{{
  "words": [
    {{
      "word": "英文單字",
      "partOfSpeech": "詞性，例如 n.",
      "meaning": "繁體中文意思",
      "example": {{"en": "英文例句", "zh": "例句的繁體中文翻譯"}},
      "synonyms": ["同義詞"],
      "antonyms": ["反義詞"],
      "difficulty": "easy | medium | hard",
      "category": "主題分類"
    }}
  ]
}}"""


def ensure_traditional_chinese(obj):
    if isinstance(obj, str):
        return _s2twp.convert(obj)
    elif isinstance(obj, list):
        return [ensure_traditional_chinese(item) for item in obj]
    elif isinstance(obj, dict):
        return {k: ensure_traditional_chinese(v) for k, v in obj.items()}
    return obj


def parse_json_object(text: str) -> Optional[dict]:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        match = _re.search(r'\{.*\}', text, _re.DOTALL)
        if not match:
            return None
        try:
            return json.loads(match.group())
        except json.JSONDecodeError:
            return None


async def ollama_chat(messages: list, model: str = None, temperature: float = 0.3,
                      num_predict: int = 2048, timeout: int = 120, json_mode: bool = False) -> Optional[str]:
    """Call Ollama chat API and return the content string (None on non-200)."""
    if model is None:
        model = OLLAMA_MODEL
    payload = {
        "model": model,
        "messages": messages,
        "stream": False,
        "options": {"temperature": temperature, "num_predict": num_predict},
    }
    if json_mode:
        payload["format"] = "json"
    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.post(f"{OLLAMA_URL}/api/chat", json=payload)
    if resp.status_code != 200:
        logger.warning("Ollama returned non-200", extra={"component": "ollama", "status_code": resp.status_code})
        return None
    return resp.json().get("message", {}).get("content", "")


async def check_ollama_connectivity() -> bool:
    try:
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.get(f"{OLLAMA_URL}/api/tags")
            return resp.status_code == 200
    except httpx.HTTPError:
        logger.warning("Ollama not reachable", extra={"component": "ollama"})
        return False


async def translate(text: str) -> TranslationResponse:
    """Translate a word or phrase between English and Chinese."""
    messages = [
        {"role": "system", "content": TRANSLATION_SYSTEM_PROMPT},
        {"role": "user", "content": text},
    ]
    try:
        content = await ollama_chat(messages, temperature=0.3, timeout=TRANSLATE_TIMEOUT)
    except httpx.HTTPError as e:
        raise GeneratorUnavailable(f"translation request failed: {e}") from e
    if content is None:
        raise GeneratorUnavailable("translation request was rejected")

    if "{" not in content:
        # Plain answer: the whole reply is the meaning of the input
        meaning = content.strip().strip('"')
        return TranslationResponse(translations=[Translation(word=text, meaning=ensure_traditional_chinese(meaning))])

    data = parse_json_object(content)
    if not isinstance(data, dict):
        raise GeneratorUnavailable("translation response is not valid JSON")
    data = ensure_traditional_chinese(data)
    translations = []
    for item in data.get("translations") or []:
        if isinstance(item, dict) and item.get("word"):
            translations.append(Translation(**item))
    return TranslationResponse(translations=translations)


async def generate_words(course: str, count: int, level: int) -> List[CandidateWord]:
    """Ask the model for ``count`` vocabulary words for a course and stored level.

    No uniqueness or novelty is promised; callers filter the result.
    """
    score = display_level(course, level)
    system_prompt = WORD_GENERATOR_SYSTEM_PROMPT.format(
        course_label=course_name(course), level=score, count=count,
    )
    messages = [
        {"role": "system", "content": system_prompt},
        {"role": "user", "content": f"請生成 {count} 個適合 {course} 考試 {score} 分程度的英文單字"},
    ]
    try:
        content = await ollama_chat(
            messages, temperature=1.0, num_predict=max(2048, count * 160),
            timeout=GENERATE_TIMEOUT, json_mode=True,
        )
    except httpx.HTTPError as e:
        logger.exception("Word generation request failed", extra={"component": "ollama", "course": course})
        raise GeneratorUnavailable(f"word generation request failed: {e}") from e
    if content is None:
        raise GeneratorUnavailable("word generation request was rejected")

    data = parse_json_object(content)
    if not isinstance(data, dict) or not isinstance(data.get("words"), list):
        raise GeneratorUnavailable("word generation response is not valid JSON")

    words = []
    for item in ensure_traditional_chinese(data["words"]):
        if not isinstance(item, dict) or not str(item.get("word", "")).strip():
            continue
        item["word"] = str(item["word"]).strip()
        try:
            words.append(CandidateWord(**item))
        except ValueError:
            logger.warning("Dropping malformed generated word", extra={"component": "ollama", "detail": item.get("word")})
    logger.info("Generated words", extra={"component": "ollama", "course": course, "count": len(words)})
    return words
