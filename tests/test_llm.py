"""Tests for translation and word generation on top of a stubbed Ollama."""
import asyncio
import json

import httpx
import pytest

import llm
from errors import GeneratorUnavailable


def stub_chat(monkeypatch, reply=None, exc=None):
    calls = []

    async def fake_chat(messages, **kwargs):
        calls.append({"messages": messages, **kwargs})
        if exc is not None:
            raise exc
        return reply

    monkeypatch.setattr(llm, "ollama_chat", fake_chat)
    return calls


TRANSLATION_JSON = json.dumps({
    "translations": [{
        "word": "apple",
        "partOfSpeech": "n.",
        "meaning": "苹果",
        "example": {"en": "I ate an apple.", "zh": "我吃了一个苹果。"},
        "synonyms": [],
        "antonyms": [],
    }]
}, ensure_ascii=False)


def test_translate_parses_json_and_converts_to_traditional(monkeypatch):
    stub_chat(monkeypatch, reply=TRANSLATION_JSON)
    resp = asyncio.run(llm.translate("apple"))
    assert len(resp.translations) == 1
    t = resp.translations[0]
    assert t.word == "apple"
    assert t.meaning == "蘋果"
    assert t.example.zh == "我吃了一個蘋果。"


def test_translate_extracts_json_wrapped_in_prose(monkeypatch):
    stub_chat(monkeypatch, reply="Here you go:\n" + TRANSLATION_JSON + "\nDone.")
    resp = asyncio.run(llm.translate("apple"))
    assert resp.translations[0].partOfSpeech == "n."


def test_translate_plain_answer_becomes_single_translation(monkeypatch):
    stub_chat(monkeypatch, reply="謝謝")
    resp = asyncio.run(llm.translate("thank you"))
    assert len(resp.translations) == 1
    assert resp.translations[0].word == "thank you"
    assert resp.translations[0].meaning == "謝謝"


def test_translate_failures_raise_generator_unavailable(monkeypatch):
    stub_chat(monkeypatch, exc=httpx.ConnectError("refused"))
    with pytest.raises(GeneratorUnavailable):
        asyncio.run(llm.translate("apple"))

    stub_chat(monkeypatch, reply=None)
    with pytest.raises(GeneratorUnavailable):
        asyncio.run(llm.translate("apple"))

    stub_chat(monkeypatch, reply="{not json")
    with pytest.raises(GeneratorUnavailable):
        asyncio.run(llm.translate("apple"))


def test_generate_words_builds_candidates(monkeypatch):
    reply = json.dumps({"words": [
        {"word": " negotiate ", "partOfSpeech": "v.", "meaning": "谈判",
         "example": {"en": "We negotiate prices.", "zh": "我们谈判价格。"},
         "synonyms": ["bargain"], "antonyms": [], "difficulty": "medium", "category": "business"},
        {"word": "", "meaning": "missing word"},
        "not-an-object",
        {"word": "agenda", "partOfSpeech": "n.", "meaning": "议程"},
    ]}, ensure_ascii=False)
    calls = stub_chat(monkeypatch, reply=reply)

    words = asyncio.run(llm.generate_words("toeic", 30, 750))
    assert [w.word for w in words] == ["negotiate", "agenda"]
    assert words[0].meaning == "談判"
    assert words[0].synonyms == ["bargain"]
    assert calls[0]["json_mode"] is True
    assert "30" in calls[0]["messages"][0]["content"]
    assert "750" in calls[0]["messages"][0]["content"]


def test_generate_words_uses_human_ielts_score(monkeypatch):
    calls = stub_chat(monkeypatch, reply='{"words": []}')
    assert asyncio.run(llm.generate_words("ielts", 15, 65)) == []
    prompt = calls[0]["messages"][0]["content"]
    assert "6.5" in prompt
    assert "雅思" in prompt


@pytest.mark.parametrize("reply", [None, "no json here", '{"items": []}', '{"words": "apple"}'])
def test_generate_words_bad_responses(monkeypatch, reply):
    stub_chat(monkeypatch, reply=reply)
    with pytest.raises(GeneratorUnavailable):
        asyncio.run(llm.generate_words("toeic", 9, 500))


def test_generate_words_http_error(monkeypatch):
    stub_chat(monkeypatch, exc=httpx.ReadTimeout("slow"))
    with pytest.raises(GeneratorUnavailable):
        asyncio.run(llm.generate_words("toeic", 9, 500))


def test_parse_json_object():
    assert llm.parse_json_object('{"a": 1}') == {"a": 1}
    assert llm.parse_json_object('noise {"a": [1, 2]} noise') == {"a": [1, 2]}
    assert llm.parse_json_object("nothing") is None


def test_ensure_traditional_chinese_walks_nested_values():
    data = {"meaning": "软件", "list": ["汉语"], "n": 3}
    assert llm.ensure_traditional_chinese(data) == {"meaning": "軟體", "list": ["漢語"], "n": 3}


def test_ollama_chat_sends_json_format(monkeypatch):
    seen = {}

    def handler(request):
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"message": {"content": "{}"}})

    transport = httpx.MockTransport(handler)
    real_client = httpx.AsyncClient

    def client_factory(**kwargs):
        return real_client(transport=transport, **kwargs)

    monkeypatch.setattr(llm.httpx, "AsyncClient", client_factory)
    content = asyncio.run(llm.ollama_chat([{"role": "user", "content": "hi"}], json_mode=True))
    assert content == "{}"
    assert seen["payload"]["format"] == "json"
    assert seen["payload"]["stream"] is False


def test_ollama_chat_non_200_returns_none(monkeypatch):
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
    real_client = httpx.AsyncClient
    monkeypatch.setattr(llm.httpx, "AsyncClient", lambda **kwargs: real_client(transport=transport, **kwargs))
    assert asyncio.run(llm.ollama_chat([{"role": "user", "content": "hi"}])) is None
