"""User-facing message texts and formatters for the LINE chat."""
from typing import List, Optional

from models import (
    CandidateWord, Translation, TranslationResponse, UserConfig, WordRecord,
    COURSE_LABELS, course_name, display_level,
)

CARD_SEPARATOR = "\n-------------------\n"

GREETING = """👋 嗨！我是你的語言小幫手！

我可以幫你翻譯英文和中文，不論是英翻中還是中翻英，通通都沒問題 ✅
而且我會在每天晚上幫你整理你今天問過的單字，協助你定期複習 🧠✨

如果你有興趣，也可以點選我們的字卡連結，我們目前支援「多益」與「雅思」的每日單字推播 📚📩
不過目前暫時沒有興趣也沒關係，你可以隨時輸入「/設定推播」來開始設定。
也可以輸入「/個人設定」來查看你的設定紀錄唷！

如有任何疑問，歡迎隨時輸入「/說明」來再次查看這份說明 📎"""

UNKNOWN_COMMAND = (
    "❌ 目前無此設定\n\n可使用的指令：\n"
    "• /說明 - 查看使用說明\n"
    "• /設定推播 - 設定推播選項\n"
    "• /個人設定 - 查看個人設定"
)

PUSH_SETTINGS_START = "📱 設定每日單字推播\n\n請選擇你想要的字卡類型："
GENERIC_ERROR = "抱歉，設定過程發生錯誤，請稍後再試。"
TRANSLATE_ERROR = "抱歉，翻譯服務暫時無法使用，請稍後再試。"
NO_TRANSLATION = "抱歉，找不到這個字的翻譯，請換個說法再試一次。"
INPUT_TOO_LONG = "輸入太長了，請一次輸入一個單字或短句（200 字以內）。"
RATE_LIMITED = "訊息太多了，請稍等一分鐘再試 🙏"
SETTINGS_UNAVAILABLE = "抱歉，無法取得您的設定資料，請稍後再試。"
NEED_COURSE_AND_SCORE = "請先設定課程和分數。"
SCHEDULE_FAILED = "⚠️ 排程建立失敗，請稍後重新設定或聯絡客服。"

NOT_CONFIGURED = (
    "📝 您尚未完成設定\n\n請先：\n1. 選擇課程（多益/雅思）\n2. 設定您的程度分數\n3. 設定推播選項\n\n"
    "💡 輸入「/說明」查看完整使用說明"
)

COURSE_INTEREST = {
    "toeic": """太棒了！我已為你設定多益課程 📘

請告訴我你目前的多益分數（0-990分）：
如果不確定的話可以先隨機輸入一個大概的分數，之後如果難易度不符合可以再調整。

請直接輸入數字即可（例如：750）""",
    "ielts": """太棒了！我已為你設定雅思課程 📗

請告訴我你目前的雅思分數（0-9分）：
如果不確定的話可以先隨機輸入一個大概的分數，之後如果難易度不符合可以再調整。

請直接輸入數字即可（例如：6.5）""",
}

CAROUSEL_COLUMNS = [
    {"title": "📘 多益", "text": "每天一字，幫助你準備 TOEIC！", "label": "有興趣", "reply": "我對多益有興趣"},
    {"title": "📗 雅思", "text": "提升你的 IELTS 單字力！", "label": "有興趣", "reply": "我對雅思有興趣"},
]


def score_saved(course: str, level: int) -> str:
    if course == "ielts":
        return f"✅ 已設定你的雅思分數為 {display_level(course, level):.1f} 分！"
    return f"✅ 已設定你的多益分數為 {level} 分！"


def score_out_of_range(course: str) -> str:
    if course == "ielts":
        return "雅思分數應該在 0-9 分之間（例如：6.5），請重新輸入。"
    return "多益分數應該在 0-990 分之間，請重新輸入。"


def push_settings_prompt(score_message: str) -> str:
    return (
        score_message
        + "\n\n📱 要設定每日單字推播嗎？\n\n🔧 預設設定：每天10個單字，早上8:00推播\n"
        + "❗ 如使用預設設定可直接跳過，並於明天開始推播~"
    )


def daily_words_picker(course: str, from_settings: bool = True) -> str:
    if from_settings:
        return f"📱 設定 {course_name(course)} 推播詳細選項\n\n請選擇每天要收到幾個單字："
    return f"✅ 已選擇 {course_name(course)} 字卡\n\n📱 設定每日推播\n\n請選擇每天要收到幾個單字："


def push_time_picker(daily_words: int) -> str:
    return f"✅ 已設定每天推播 {daily_words} 個單字\n\n請選擇推播時間："


def push_settings_done(course: str, daily_words: int, push_time: str, default: bool = False) -> str:
    name = course_name(course)
    title = "🎉 已使用預設推播設定！" if default else "🎉 推播設定完成！"
    return (
        f"{title}\n\n📱 你的推播設定：\n• 課程：{name}\n• 每天 {daily_words} 個單字\n"
        f"• 推播時間：{push_time}\n\n🚀 馬上為您推播 {name} 單字，下一次會於明天 {push_time} 推播！\n\n"
        "現在你可以開始使用翻譯功能！"
    )


def format_translation(t: Translation) -> str:
    lines = [
        f"【{t.word}】({t.partOfSpeech})",
        f"意思：{t.meaning}",
        "例句：",
        f"  {t.example.en}",
        f"  {t.example.zh}",
    ]
    if t.synonyms:
        lines.append(f"同義詞：{', '.join(t.synonyms)}")
    if t.antonyms:
        lines.append(f"反義詞：{', '.join(t.antonyms)}")
    return "\n".join(lines) + "\n"


def format_translations(resp: TranslationResponse) -> str:
    return CARD_SEPARATOR.join(format_translation(t) for t in resp.translations)


def format_word_push(course: str, words: List[CandidateWord]) -> str:
    lines = [f"📚 今日{course}單字推播 ({len(words)}個)", ""]
    for i, w in enumerate(words, 1):
        card = (
            f"{i}. 【{w.word}】({w.partOfSpeech})\n"
            f"意思：{w.meaning}\n"
            f"例句：{w.example.en}\n"
            f"中文：{w.example.zh}"
        )
        if w.synonyms:
            card += f"\n同義詞：{', '.join(w.synonyms)}"
        if w.antonyms:
            card += f"\n反義詞：{', '.join(w.antonyms)}"
        lines.append(card)
        lines.append("")
    return "\n".join(lines)


def format_word_record(r: WordRecord) -> str:
    return f"【{r.word}】({r.partOfSpeech})\n翻譯：{r.translation}\n例句：\n  {r.sentence}\n"


def format_word_records(records: List[WordRecord]) -> str:
    return "【每日單字回顧】📚\n\n" + CARD_SEPARATOR.join(format_word_record(r) for r in records)


def format_user_settings(config: Optional[UserConfig]) -> str:
    if config is None:
        return NOT_CONFIGURED

    lines = ["⚙️ 個人設定資訊", ""]
    if config.displayName:
        lines.append(f"👤 用戶名稱：{config.displayName}")

    if config.course:
        lines.append(f"📚 課程：{COURSE_LABELS.get(config.course, config.course)}")
        if config.level > 0:
            if config.course == "ielts":
                lines.append(f"📊 程度：{display_level(config.course, config.level):.1f} 分")
            else:
                lines.append(f"📊 程度：{config.level} 分")
        else:
            lines.append("📊 程度：尚未設定")
    else:
        lines.append("📚 課程：尚未選擇")
        lines.append("📊 程度：尚未設定")

    if config.dailyWords > 0:
        lines.append(f"📱 每日推播：{config.dailyWords} 個單字")
    else:
        lines.append("📱 每日推播：尚未設定")
    lines.append(f"⏰ 推播時間：{config.pushTime or '尚未設定'}")
    if config.timezone:
        lines.append(f"🌏 時區：{config.timezone}")

    lines.append("")
    if config.is_complete():
        lines.append("✅ 設定已完成！\n\n💡 可使用「/設定推播」重新調整推播設定")
    else:
        lines.append("⚠️ 設定尚未完整\n\n💡 使用「/設定推播」完成剩餘設定")
    return "\n".join(lines)
