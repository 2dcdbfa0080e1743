from __future__ import annotations

import re

from intents.rules import Rule, rule

MAX_SUGGESTIONS = 4

TOPIC_RULES: tuple[Rule, ...] = (
    rule(r"天氣|下雨|溫度|氣溫|降雨", "weather"),
    rule(r"香水|香氛|香味|調香|香調", "perfume"),
    rule(r"心情|情緒|感覺|感受|開心|難過", "mood"),
    rule(r"生活|日常|工作|學習|興趣", "life"),
    rule(r"建議|推薦|應該|如何|怎樣", "advice"),
    rule(r"記帳|支出|收入|餘額|交易|花了", "accounting"),
)

TOPIC_TEMPLATES: dict[str, tuple[str, ...]] = {
    "weather": ("其他城市的天氣如何？", "這種天氣適合做什麼活動？", "天氣對心情有什麼影響？"),
    "perfume": ("還有其他香調推薦嗎？", "不同場合適合什麼香水？", "如何選擇適合自己的香水？"),
    "mood": ("如何改善心情？", "有什麼放鬆的方法？", "想聊聊其他感受嗎？"),
    "life": ("想分享更多生活點滴嗎？", "還有其他想聊的話題嗎？", "有什麼需要建議的嗎？"),
    "advice": ("還有其他問題需要建議嗎？", "想了解更多相關資訊嗎？", "有什麼其他想討論的？"),
    "accounting": ("目前餘額還有多少？", "列出最近的交易", "本月收支統計"),
}

WEATHER_REPLY_SUGGESTIONS = ("還有什麼需要為您服務的嗎？", "其他城市的天氣如何？", "還有其他問題嗎？")
GENERIC_SUGGESTIONS = ("還有什麼想聊的嗎？", "有什麼其他問題嗎？", "想聊聊其他話題嗎？")

_KEYWORD_RE = re.compile(r"天氣|香水|心情|生活|工作|學習|興趣|問題|建議|推薦|方法|如何|怎樣")


def build_suggestions(message: str, reply: str) -> list[str]:
    text = f"{message} {reply}".lower()
    suggestions: list[str] = []
    for item in TOPIC_RULES:
        if item.matches(text):
            suggestions.extend(TOPIC_TEMPLATES[item.label])
    if suggestions:
        return _dedupe(suggestions)[:MAX_SUGGESTIONS]

    keyword = _KEYWORD_RE.search(message)
    if keyword:
        return [f"關於{keyword.group(0)}，還有什麼想了解的嗎？", "還有其他相關問題嗎？", "想深入討論哪個方面？"]
    return list(GENERIC_SUGGESTIONS)


def _dedupe(items: list[str]) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        unique.append(item)
    return unique
