from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
import re
from typing import Any, Callable, Mapping, Sequence

from intents.rules import Rule, first_match, rule

ACCOUNTING_KEYWORDS_RE = re.compile(
    r"記帳|記賬|帳本|帳戶|餘額|交易|明細|收支|支出|收入|分類|月度|財務|對帳|進帳|匯款|轉帳"
)
ACCOUNTING_VERB_RE = re.compile(
    r"新增|記錄|記一筆|花了|支出|收入|花費|付款|消費|買了|進帳|轉帳|匯款|查詢|查看|看"
)
EXPENSE_RE = re.compile(r"支出|花|花費|付款|消費|買|付了|刷卡|搭捷運|捷運|公車|交通")
INCOME_RE = re.compile(r"收入|薪水|薪資|工資|獎金|進帳|賺")

# Order matters: the first class whose keywords appear wins.
CATEGORY_RULES: tuple[Rule, ...] = (
    rule(r"薪水|薪資|工資|獎金|收入|進帳|賺", "income"),
    rule(r"餐飲|餐費|午餐|晚餐|早餐|吃|飲食|外賣|外送|美食", "food"),
    rule(r"交通|地鐵|捷運|公車|計程車|叫車|油錢|加油|高鐵", "transport"),
    rule(r"娛樂|電影|遊戲|旅遊|演唱會|展覽", "entertainment"),
    rule(r"購物|衣服|鞋子|日用品|電商|買了", "shopping"),
    rule(r"醫療|看診|藥|藥品|醫院|體檢|掛號", "healthcare"),
    rule(r"教育|課程|書籍|學習|培訓|補習", "education"),
)

# Priority order: balance -> categories -> monthly summary -> list -> add.
TOOL_INTENT_RULES: tuple[Rule, ...] = (
    rule(r"餘額|還有多少|剩多少", "get_balance"),
    rule(r"分類|類別", "get_categories"),
    rule(r"本月|月度|月報|統計|彙總", "get_monthly_summary"),
    rule(r"最近|交易|明細|列表|紀錄", "list_transactions"),
    rule(r"新增|記錄|記一筆|花了|支出|收入", "add_transaction"),
)

INTENT_LABELS: tuple[Rule, ...] = (
    rule(r"餘額|還有多少|剩多少", "查詢餘額"),
    rule(r"最近|交易|明細|列表|紀錄", "查詢交易"),
    rule(r"本月|月度|月報|統計|彙總", "月度彙總"),
    rule(r"分類|類別", "分類清單"),
    rule(r"新增|記錄|記一筆|花了|支出|收入", "新增記帳"),
)

TOOL_ALIASES: dict[str, tuple[re.Pattern[str], ...]] = {
    "get_balance": (re.compile(r"balance|餘額|剩餘", re.IGNORECASE),),
    "get_categories": (re.compile(r"categor|分類|類別", re.IGNORECASE),),
    "get_monthly_summary": (re.compile(r"month|summary|月|彙總|統計", re.IGNORECASE),),
    "list_transactions": (re.compile(r"list|transaction|交易|明細|紀錄", re.IGNORECASE),),
    "add_transaction": (re.compile(r"add|transaction|record|記帳|新增|記錄|支出|收入", re.IGNORECASE),),
}

_DIGITS = {"零": 0, "一": 1, "二": 2, "兩": 2, "三": 3, "四": 4, "五": 5, "六": 6, "七": 7, "八": 8, "九": 9}
_SMALL_UNITS = {"十": 10, "百": 100, "千": 1000}
_ARABIC_RE = re.compile(r"-?\d+(?:\.\d+)?")
_CHINESE_NUMBER_RE = re.compile(r"[零一二兩三四五六七八九十百千萬]+(?=元|塊)|[零一二兩三四五六七八九十百千萬]{2,}")
_DATE_TOKEN_RE = re.compile(r"\d{4}-\d{2}-\d{2}|\d{1,2}[/\-]\d{1,2}")
_ISO_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_MONTH_DAY_RE = re.compile(r"(\d{1,2})[/\-](\d{1,2})")
_LIMIT_RE = re.compile(r"最近(\d+)\s*筆")
_DESCRIPTION_NOISE_RE = re.compile(
    r"記帳|新增|記錄|記一筆|支出|收入|花了|花費|付款|消費|買了|進帳|轉帳|匯款|請幫我|幫我"
)
_DESCRIPTION_DAY_RE = re.compile(r"今天|昨天|前天|元|塊")
_DESCRIPTION_PUNCT_RE = re.compile(r"[，,。．！!：:;；]")


@dataclass(slots=True)
class AmountMatch:
    value: float
    raw: str


@dataclass(slots=True)
class AccountingIntent:
    tool_intent: str | None
    amount: float | None
    category: str | None
    date: str | None


def parse_chinese_number(text: str) -> int:
    """Positional digit-unit accumulation: 兩百五十 -> 250, 一萬兩千 -> 12000."""
    total = 0
    section = 0
    current = 0
    for char in text:
        if char in _DIGITS:
            current = _DIGITS[char]
        elif char in _SMALL_UNITS:
            section += (current or 1) * _SMALL_UNITS[char]
            current = 0
        elif char == "萬":
            total += ((section + current) or 1) * 10000
            section = 0
            current = 0
    return total + section + current


def detect_amount(text: str) -> AmountMatch | None:
    # Dates would otherwise be read as amounts.
    stripped = _DATE_TOKEN_RE.sub(" ", str(text or ""))
    match = _ARABIC_RE.search(stripped)
    if match:
        return AmountMatch(value=_as_number(float(match.group(0))), raw=match.group(0))
    match = _CHINESE_NUMBER_RE.search(stripped)
    if match:
        value = parse_chinese_number(match.group(0))
        if value:
            return AmountMatch(value=value, raw=match.group(0))
    return None


def normalize_amount(text: str, amount: float | None) -> float | None:
    if amount is None:
        return None
    is_expense = bool(EXPENSE_RE.search(text))
    is_income = bool(INCOME_RE.search(text))
    category = detect_category(text)
    if is_expense and amount > 0:
        return -amount
    if not is_income and category and amount > 0:
        return -amount
    if is_income and amount < 0:
        return abs(amount)
    return amount


def detect_category(text: str) -> str | None:
    matched = first_match(CATEGORY_RULES, str(text or ""))
    return matched.label if matched else None


def detect_category_keyword(text: str) -> str | None:
    for item in CATEGORY_RULES:
        match = item.pattern.search(str(text or ""))
        if match:
            return match.group(0)
    return None


def detect_date(text: str, today: date | None = None) -> str | None:
    today = today or date.today()
    if "今天" in text:
        return today.isoformat()
    if "昨天" in text:
        return (today - timedelta(days=1)).isoformat()
    if "前天" in text:
        return (today - timedelta(days=2)).isoformat()

    iso = _ISO_DATE_RE.search(text)
    if iso:
        return iso.group(0)

    month_day = _MONTH_DAY_RE.search(text)
    if month_day:
        month = int(month_day.group(1))
        day = int(month_day.group(2))
        return f"{today.year}-{month:02d}-{day:02d}"
    return None


def detect_limit(text: str) -> int | None:
    match = _LIMIT_RE.search(text)
    if not match:
        return None
    return min(int(match.group(1)) or 20, 100)


def pick_tool_intent(text: str) -> str | None:
    matched = first_match(TOOL_INTENT_RULES, str(text or ""))
    return matched.label if matched else None


def detect_accounting_labels(text: str) -> list[str]:
    labels: list[str] = []
    for item in INTENT_LABELS:
        if item.matches(text) and item.label not in labels:
            labels.append(item.label)
    return labels


def tool_name_of(tool: object) -> str | None:
    if isinstance(tool, str):
        return tool
    if not isinstance(tool, Mapping):
        return None
    for key in ("name", "id", "tool"):
        value = tool.get(key)
        if value:
            return str(value)
    function = tool.get("function")
    if isinstance(function, Mapping) and function.get("name"):
        return str(function["name"])
    return None


def tool_description_of(tool: object) -> str:
    if not isinstance(tool, Mapping):
        return ""
    description = tool.get("description")
    if description:
        return str(description)
    function = tool.get("function")
    if isinstance(function, Mapping):
        return str(function.get("description") or "")
    return ""


def resolve_tool_name(intent: str | None, tools: Sequence[object]) -> str | None:
    names = [name for name in (tool_name_of(tool) for tool in tools) if name]
    if not intent:
        return names[0] if names else None
    if intent in names:
        return intent
    patterns = TOOL_ALIASES.get(intent, ())
    for tool in tools:
        name = tool_name_of(tool)
        if not name:
            continue
        description = tool_description_of(tool)
        if any(pattern.search(name) or pattern.search(description) for pattern in patterns):
            return name
    return names[0] if names else None


def build_description(text: str, amount_raw: str | None, category_keyword: str | None) -> str:
    cleaned = str(text or "")
    if amount_raw:
        cleaned = cleaned.replace(amount_raw, "", 1)
    if category_keyword:
        cleaned = cleaned.replace(category_keyword, "", 1)
    cleaned = _DESCRIPTION_NOISE_RE.sub("", cleaned)
    cleaned = _DESCRIPTION_DAY_RE.sub("", cleaned)
    cleaned = re.sub(r"\s+", " ", _DESCRIPTION_PUNCT_RE.sub(" ", cleaned)).strip()
    if len(cleaned) >= 2:
        return cleaned
    return category_keyword or "記帳"


def _add_transaction_args(text: str) -> dict[str, Any] | None:
    found = detect_amount(text)
    amount = normalize_amount(text, found.value if found else None)
    if amount is None:
        return None
    category = detect_category(text) or ("income" if amount > 0 else "other")
    args: dict[str, Any] = {
        "amount": amount,
        "category": category,
        "description": build_description(text, found.raw if found else None, detect_category_keyword(text)),
    }
    when = detect_date(text)
    if when:
        args["date"] = when
    return args


def _balance_args(text: str) -> dict[str, Any]:
    return {"detailed": bool(re.search(r"詳細|統計", text))}


def _list_args(text: str) -> dict[str, Any]:
    args: dict[str, Any] = {"limit": detect_limit(text) or 20}
    category = detect_category(text)
    if category:
        args["category"] = category
    when = detect_date(text)
    if when:
        args["start_date"] = when
        args["end_date"] = when
    return args


def _no_args(text: str) -> dict[str, Any]:
    return {}


ArgExtractor = Callable[[str], "dict[str, Any] | None"]

ARG_EXTRACTORS: dict[str, ArgExtractor] = {
    "add_transaction": _add_transaction_args,
    "get_balance": _balance_args,
    "list_transactions": _list_args,
    "get_monthly_summary": _no_args,
    "get_categories": _no_args,
}


def register_extractor(tool_name: str, extractor: ArgExtractor) -> None:
    ARG_EXTRACTORS[tool_name] = extractor


def extract_args(
    tool_name: str,
    text: str,
    *,
    schema: Mapping[str, Any] | None = None,
) -> dict[str, Any] | None:
    """Derive tool arguments from free text; None means the call cannot be made."""
    extractor = ARG_EXTRACTORS.get(tool_name)
    args = extractor(text) if extractor else {"question": text}
    if args is None:
        return None

    properties = _schema_properties(schema)
    if properties is None:
        return args
    return {key: value for key, value in args.items() if key in properties}


def _schema_properties(schema: Mapping[str, Any] | None) -> set[str] | None:
    if not schema:
        return None
    # Accept either a tool descriptor or its inputSchema.
    input_schema = schema.get("inputSchema", schema)
    if not isinstance(input_schema, Mapping):
        return None
    properties = input_schema.get("properties")
    if not isinstance(properties, Mapping) or not properties:
        return None
    return set(properties)


def is_accounting_query(text: str) -> bool:
    if ACCOUNTING_KEYWORDS_RE.search(text):
        return True
    if detect_category(text):
        return True
    return detect_amount(text) is not None and bool(ACCOUNTING_VERB_RE.search(text))


def classify(text: str, today: date | None = None) -> AccountingIntent | None:
    text = str(text or "")
    if not is_accounting_query(text):
        return None
    found = detect_amount(text)
    return AccountingIntent(
        tool_intent=pick_tool_intent(text),
        amount=normalize_amount(text, found.value if found else None),
        category=detect_category(text),
        date=detect_date(text, today),
    )


def _as_number(value: float) -> float:
    return int(value) if float(value).is_integer() else value
