from __future__ import annotations

from dataclasses import dataclass
import re

from intents.rules import Rule, any_match, first_match, rule

_REGION_GROUP = "北部|中部|南部|東部|全台|全臺"

COMPLAINT_PATTERNS = (
    re.compile(r"(很|非常|超|太).*(機車|煩|討厭|不爽)"),
    re.compile(r"(原本|剛才|剛剛).*(但|可是|不過)"),
)

CANCEL_RE = re.compile(r"沒有|不用|不需要|不用了|算了|取消")

# Colloquial, simplified-character and official spellings -> CWA location name.
CITY_ALIASES: dict[str, str] = {
    "台北": "臺北市", "臺北": "臺北市", "台北市": "臺北市", "臺北市": "臺北市",
    "新北": "新北市", "新北市": "新北市",
    "基隆": "基隆市", "基隆市": "基隆市",
    "桃園": "桃園市", "桃園市": "桃園市",
    "新竹": "新竹市", "新竹市": "新竹市", "新竹縣": "新竹縣",
    "苗栗": "苗栗縣", "苗栗縣": "苗栗縣",
    "台中": "臺中市", "臺中": "臺中市", "台中市": "臺中市", "臺中市": "臺中市",
    "彰化": "彰化縣", "彰化縣": "彰化縣",
    "南投": "南投縣", "南投縣": "南投縣",
    "雲林": "雲林縣", "雲林縣": "雲林縣", "云林": "雲林縣",
    "嘉義": "嘉義市", "嘉義市": "嘉義市", "嘉義縣": "嘉義縣",
    "台南": "臺南市", "臺南": "臺南市", "台南市": "臺南市", "臺南市": "臺南市",
    "高雄": "高雄市", "高雄市": "高雄市",
    "屏東": "屏東縣", "屏東縣": "屏東縣",
    "宜蘭": "宜蘭縣", "宜蘭縣": "宜蘭縣", "宜兰": "宜蘭縣",
    "花蓮": "花蓮縣", "花蓮縣": "花蓮縣", "花莲": "花蓮縣",
    "台東": "臺東縣", "臺東": "臺東縣", "台東縣": "臺東縣", "臺東縣": "臺東縣",
    "台東市": "臺東縣", "臺東市": "臺東縣", "台东": "臺東縣",
    "澎湖": "澎湖縣", "澎湖縣": "澎湖縣",
    "金門": "金門縣", "金門縣": "金門縣", "金门": "金門縣",
    "連江": "連江縣", "馬祖": "連江縣", "連江縣": "連江縣",
}

_CITY_GROUP = "|".join(sorted((re.escape(alias) for alias in CITY_ALIASES), key=len, reverse=True))

WEATHER_QUERY_PATTERNS = (
    re.compile(r"(查|看|問|想知道|了解).*天氣"),
    re.compile(r"天氣.*(如何|怎樣|怎麼樣|好嗎)"),
    re.compile(r"(今天|明天|後天|這週|下週).*天氣"),
    re.compile(rf"({_CITY_GROUP}).*天氣"),
    re.compile(rf"天氣.*({_CITY_GROUP})"),
    re.compile(rf"({_REGION_GROUP}).*天氣"),
    re.compile(rf"天氣.*({_REGION_GROUP})"),
    re.compile(r"(會|要|可能).*下雨"),
    re.compile(r"降雨機率"),
    re.compile(r"氣溫.*(多少|幾度)"),
)


# Display names shown to the user, keyed by canonical CWA name.
CITY_DISPLAY: dict[str, str] = {
    "臺北市": "台北", "新北市": "新北", "基隆市": "基隆", "桃園市": "桃園",
    "新竹市": "新竹", "新竹縣": "新竹縣", "苗栗縣": "苗栗", "臺中市": "台中",
    "彰化縣": "彰化", "南投縣": "南投", "雲林縣": "雲林", "嘉義市": "嘉義",
    "嘉義縣": "嘉義縣", "臺南市": "台南", "高雄市": "高雄", "屏東縣": "屏東",
    "宜蘭縣": "宜蘭", "花蓮縣": "花蓮", "臺東縣": "台東", "澎湖縣": "澎湖",
    "金門縣": "金門", "連江縣": "連江",
}

REGION_RULES: tuple[Rule, ...] = (
    rule(r"全台|全臺|全國", "全台"),
    rule(r"北(部|台|臺|區|邊)|^\s*北\s*$", "北部"),
    rule(r"中(部|台|臺|區)|^\s*中\s*$", "中部"),
    rule(r"南(部|台|臺|區|邊)|^\s*南\s*$", "南部"),
    rule(r"東(部|台|臺|區|邊)|^\s*東\s*$", "東部"),
)

REGION_COUNTIES: dict[str, tuple[str, ...]] = {
    "北部": ("臺北市", "新北市", "基隆市", "桃園市", "新竹市", "新竹縣", "宜蘭縣"),
    "中部": ("苗栗縣", "臺中市", "彰化縣", "南投縣", "雲林縣"),
    "南部": ("嘉義市", "嘉義縣", "臺南市", "高雄市", "屏東縣"),
    "東部": ("花蓮縣", "臺東縣"),
}

DAY_RULES: tuple[Rule, ...] = (
    rule(r"後天", "day_after"),
    rule(r"明天", "tomorrow"),
    rule(r"今晚", "tonight"),
)


@dataclass(slots=True)
class WeatherIntent:
    city: str | None
    canonical_city: str | None
    region: str | None
    day: str = "today"

    @property
    def resolved(self) -> bool:
        return bool(self.canonical_city or self.region)


def is_weather_query(text: str) -> bool:
    if any_match(COMPLAINT_PATTERNS, text):
        return False
    return any_match(WEATHER_QUERY_PATTERNS, text)


def is_cancellation(text: str) -> bool:
    return bool(CANCEL_RE.search(text))


def extract_city(text: str) -> tuple[str, str] | None:
    best: tuple[str, str] | None = None
    for alias, canonical in CITY_ALIASES.items():
        if alias not in text:
            continue
        if best is None or len(alias) > len(best[0]):
            best = (alias, canonical)
    return best


def extract_region(text: str) -> str | None:
    matched = first_match(REGION_RULES, text)
    return matched.label if matched else None


def extract_day(text: str) -> str:
    matched = first_match(DAY_RULES, text)
    return matched.label if matched else "today"


def resolve_location(text: str) -> WeatherIntent:
    """City wins over region: 台北/台南/台東 all contain a direction character."""
    city = extract_city(text)
    if city:
        alias, canonical = city
        return WeatherIntent(city=alias, canonical_city=canonical, region=None, day=extract_day(text))
    return WeatherIntent(city=None, canonical_city=None, region=extract_region(text), day=extract_day(text))


def classify(text: str) -> WeatherIntent | None:
    if not is_weather_query(text):
        return None
    return resolve_location(text)


def display_city(canonical: str, alias: str | None = None) -> str:
    return CITY_DISPLAY.get(canonical) or alias or canonical
