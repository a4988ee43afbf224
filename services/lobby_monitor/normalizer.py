# services/lobby_monitor/normalizer.py
"""
Turns whatever a vision backend replied into one canonical AnalysisResult.

Stages are tried in order and the first one that recognises the text wins:
  counting JSON  -> {"total_persons", <sub-counts>, "scene_description"}
  compact JSON   -> {"title", "scene", "alerts": {...}}
  partial JSON   -> truncated/invalid JSON, fields pulled out one by one with regexes
  markdown       -> caption line followed by labelled sections
  fallback       -> the whole text becomes the scene body, counts stay at zero

Every result then gets exactly one leading `<span class="ai-caption">` element and, when the
scenario asks for it, a synthesized alert message.
"""
from __future__ import annotations
import html, json, re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional

from common.logging import get_logger
from common.schemas import AnalysisResult
from services.lobby_monitor.scenarios import ScenarioConfig, Section, default_scenario

log = get_logger("normalizer")

CAPTION_MAX = 150
GENERIC_CAPTION = "Scene analysis update"
FAILURE_CAPTION = "Model recovering - next analysis incoming..."

CAPTION_RE = re.compile(
    r"<span\b[^>]*\bclass=[\"'][^\"']*\bai-caption\b[^\"']*[\"'][^>]*>(.*?)</span>", re.S | re.I)
_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.S)
_TAG_RE = re.compile(r"<[^>]+>")
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_BOLD_HEADING_RE = re.compile(r"^(?:\*\*|__)(.+?)(?:\*\*|__)\s*:?\s*(.*)$")
_LABEL_STRIP_RE = re.compile(r"^[^A-Za-z0-9]+|[^A-Za-z0-9)]+$")

_STRING_FIELDS = ("scene_description", "title", "scene", "alert_message")


@dataclass
class ParsedReply:
    parser: str
    body: str = ""
    total: int = 0
    counts: Dict[str, int] = field(default_factory=dict)
    title: Optional[str] = None
    alert: Optional[str] = None


# ----------------- value helpers -----------------
def _as_int(v: Any) -> int:
    if isinstance(v, bool):
        return int(v)
    if isinstance(v, int):
        return max(0, v)
    if isinstance(v, float):
        return max(0, int(round(v)))
    if isinstance(v, str):
        m = re.match(r"\s*(\d+)", v)
        return int(m.group(1)) if m else 0
    return 0

def _as_flag(v: Any) -> int:
    if isinstance(v, dict):
        for k in ("detected", "present", "active", "triggered", "value"):
            if k in v:
                return _as_flag(v[k])
        return 0
    if isinstance(v, str):
        s = v.strip().lower()
        if s in ("true", "yes", "detected", "present"):
            return 1
        return _as_int(s)
    return _as_int(v)

def _as_text(v: Any) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, str):
        return v.strip() or None
    return json.dumps(v, ensure_ascii=False)

def _unescape(s: str) -> str:
    try:
        return json.loads(f'"{s}"')
    except ValueError:
        s = s.rstrip("\\")
        return s.replace("\\n", "\n").replace('\\"', '"').replace("\\/", "/")

def _truncate(text: str, limit: int = CAPTION_MAX) -> str:
    text = " ".join(text.split())
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."

def _json_candidates(text: str) -> Iterator[Dict[str, Any]]:
    seen = []
    for m in _FENCE_RE.finditer(text):
        seen.append(m.group(1).strip())
    start, end = text.find("{"), text.rfind("}")
    if start >= 0 and end > start:
        seen.append(text[start:end + 1])
    for chunk in seen:
        try:
            obj = json.loads(chunk)
        except ValueError:
            continue
        if isinstance(obj, dict):
            yield obj

def _sections_of(scenario: ScenarioConfig) -> List[Section]:
    return scenario.sections or default_scenario().sections

def _alias_lookup(sections: List[Section]) -> Dict[str, str]:
    lookup: Dict[str, str] = {}
    for s in sections:
        for name in [s.key, s.title, *s.aliases]:
            lookup[name.lower()] = s.key
    return lookup

def _match_heading(line: str, lookup: Dict[str, str]):
    """Return (section_key, trailing_text) when `line` is a section heading, else None."""
    s = line.strip()
    if not s:
        return None
    hashed = s.startswith("#")
    s = s.lstrip("#").strip()
    m = _BOLD_HEADING_RE.match(s)
    if m:
        label, rest = m.group(1), m.group(2)
    elif ":" in s:
        label, rest = s.split(":", 1)
    elif hashed:
        label, rest = s, ""
    else:
        return None
    label = _LABEL_STRIP_RE.sub("", label.strip().rstrip(":")).lower()
    if not label or len(label) > 40:
        return None
    if label in lookup:
        return lookup[label], rest.strip()
    words = re.findall(r"[a-z]+", label)
    if len(words) <= 4:
        for w in words:
            if w in lookup:
                return lookup[w], rest.strip()
    return None

def split_sections(markup: str, sections: List[Section]) -> Dict[str, str]:
    """Pull `{section_key: text}` out of caption+sections markup."""
    lookup = _alias_lookup(sections)
    out: Dict[str, List[str]] = {}
    current = None
    for line in CAPTION_RE.sub("", markup).splitlines():
        hit = _match_heading(line, lookup)
        if hit:
            current = hit[0]
            out.setdefault(current, [])
            if hit[1]:
                out[current].append(hit[1])
            continue
        if current is not None:
            out[current].append(line)
    return {k: "\n".join(v).strip() for k, v in out.items() if "\n".join(v).strip()}


# ----------------- parser chain -----------------
def parse_counting_json(text: str, scenario: ScenarioConfig) -> Optional[ParsedReply]:
    total_key = scenario.total_metric.key
    for obj in _json_candidates(text):
        alerts = obj.get("alerts")
        compact = "scene" in obj or isinstance(alerts, dict)
        if "scene_description" not in obj and (total_key not in obj or compact):
            continue
        counts = {k: _as_int(obj.get(k)) for k in scenario.metric_keys}
        if isinstance(alerts, dict):
            for k, v in alerts.items():
                if k not in obj:
                    counts[k] = _as_flag(v)
        return ParsedReply(
            parser="json",
            body=_as_text(obj.get("scene_description")) or "",
            total=_as_int(obj.get(total_key)),
            counts=counts,
            title=_as_text(obj.get("title")),
            alert=_as_text(obj.get("alert_message")),
        )
    return None

def _scene_body(scene: Any, scenario: ScenarioConfig) -> str:
    if isinstance(scene, dict):
        sections = _sections_of(scenario)
        lookup = _alias_lookup(sections)
        by_key: Dict[str, str] = {}
        for name, value in scene.items():
            key = lookup.get(str(name).lower(), sections[0].key)
            text = _as_text(value) or ""
            by_key[key] = (by_key[key] + "\n" + text).strip() if key in by_key else text
        return _render_sections(by_key, sections)
    if isinstance(scene, list):
        return "\n".join(f"- {_as_text(x)}" for x in scene if _as_text(x))
    return _as_text(scene) or ""

def parse_compact_json(text: str, scenario: ScenarioConfig) -> Optional[ParsedReply]:
    for obj in _json_candidates(text):
        alerts = obj.get("alerts")
        if not ("title" in obj or "scene" in obj or isinstance(alerts, dict)):
            continue
        counts = {k: _as_int(obj.get(k)) for k in scenario.metric_keys}
        if isinstance(alerts, dict):
            for k, v in alerts.items():
                counts[k] = _as_flag(v)
        alert = obj.get("alert_message")
        if alert is None and isinstance(obj.get("alert"), str):
            alert = obj.get("alert")
        return ParsedReply(
            parser="compact",
            body=_scene_body(obj.get("scene"), scenario),
            total=_as_int(obj.get(scenario.total_metric.key)),
            counts=counts,
            title=_as_text(obj.get("title")),
            alert=_as_text(alert),
        )
    return None

def parse_partial_json(text: str, scenario: ScenarioConfig) -> Optional[ParsedReply]:
    if "{" not in text:
        return None
    found = False
    total_key = scenario.total_metric.key
    ints: Dict[str, int] = {}
    for key in [total_key, *scenario.metric_keys]:
        m = re.search(rf'"{re.escape(key)}"\s*:\s*"?(\d+)', text)
        if m:
            ints[key] = int(m.group(1))
            found = True
    strings: Dict[str, str] = {}
    for key in _STRING_FIELDS:
        m = re.search(rf'"{key}"\s*:\s*"((?:[^"\\]|\\.)*)', text, re.S)
        if m:
            strings[key] = _unescape(m.group(1)).strip()
            found = True
    counts = {k: ints.get(k, 0) for k in scenario.metric_keys}
    m = re.search(r'"alerts"\s*:\s*\{([^}]*)', text, re.S)
    if m:
        for k, v in re.findall(r'"(\w+)"\s*:\s*(true|false|\d+)', m.group(1)):
            counts[k] = 1 if v == "true" else (0 if v == "false" else int(v))
            found = True
    if not found:
        return None
    log.warning(f"Recovered partial JSON reply ({len(ints)} count(s), {len(strings)} text field(s))")
    return ParsedReply(
        parser="partial",
        body=strings.get("scene_description") or strings.get("scene") or "",
        total=ints.get(total_key, 0),
        counts=counts,
        title=strings.get("title"),
        alert=strings.get("alert_message"),
    )

def _render_sections(by_key: Dict[str, str], sections: List[Section]) -> str:
    blocks = [f"{s.heading}\n{by_key[s.key]}" for s in sections if by_key.get(s.key)]
    return "\n\n".join(blocks)

def _clean_caption_line(line: str) -> str:
    s = line.strip().lstrip("#").strip().strip("*_").strip()
    s = re.sub(r"^(?:caption|title)\s*:\s*", "", s, flags=re.I)
    return s.strip().strip("*_\"").strip()

def parse_markdown(text: str, scenario: ScenarioConfig) -> Optional[ParsedReply]:
    sections = _sections_of(scenario)
    lookup = _alias_lookup(sections)
    pre: List[str] = []
    by_key: Dict[str, List[str]] = {}
    current = None
    for line in text.splitlines():
        hit = _match_heading(line, lookup)
        if hit:
            current = hit[0]
            by_key.setdefault(current, [])
            if hit[1]:
                by_key[current].append(hit[1])
        elif current is None:
            pre.append(line)
        else:
            by_key[current].append(line)
    if current is None:
        return None

    caption_span = CAPTION_RE.search("\n".join(pre))
    title = None
    if not caption_span:
        for line in pre:
            cleaned = _clean_caption_line(line)
            if cleaned:
                title = cleaned
                break
    body = _render_sections({k: "\n".join(v).strip() for k, v in by_key.items()}, sections)
    if caption_span:
        body = caption_span.group(0) + "\n\n" + body
    return ParsedReply(parser="markdown", body=body, title=title)

def parse_fallback(text: str, scenario: ScenarioConfig) -> Optional[ParsedReply]:
    return ParsedReply(parser="fallback", body=(text or "").strip(),
                       counts={k: 0 for k in scenario.metric_keys})


# ----------------- post-processing -----------------
def _first_sentence(body: str, lookup: Dict[str, str]) -> Optional[str]:
    lines = [ln for ln in body.splitlines() if not _match_heading(ln, lookup)]
    plain = _TAG_RE.sub(" ", "\n".join(lines))
    plain = re.sub(r"[*_#`>]+", " ", plain)
    plain = " ".join(plain.split())
    for sentence in _SENTENCE_SPLIT_RE.split(plain):
        sentence = sentence.strip(" -")
        if len(sentence) >= 20 and len(sentence.split()) >= 3:
            return sentence
    return None

def _counts_summary(total: int, counts: Dict[str, int], scenario: ScenarioConfig) -> Optional[str]:
    nonzero = [(k, v) for k, v in counts.items() if v > 0]
    if total > 0:
        head = f"{total} {'person' if total == 1 else 'people'} visible"
        details = [f"{v} {scenario.label_for(k).lower()}" for k, v in nonzero if k in scenario.metric_keys]
        return f"{head}: {', '.join(details)}" if details else head
    if nonzero:
        return "Flagged: " + ", ".join(scenario.label_for(k) for k, _ in nonzero)
    return None

def _synthesize_alert(total: int, counts: Dict[str, int], scenario: ScenarioConfig) -> Optional[str]:
    rules = scenario.alerts
    if not (rules.enabled and rules.trigger_keys):
        return None
    values = dict(counts)
    values[scenario.total_metric.key] = total
    triggered = [k for k in rules.trigger_keys if values.get(k, 0) > rules.threshold]
    if not triggered:
        return None
    fields = ", ".join(f"{scenario.label_for(k)}: {values[k]}" for k in triggered)
    try:
        return rules.message_template.format(title=rules.title, fields=fields, **values)
    except (KeyError, IndexError, ValueError) as e:
        log.warning(f"Alert template for scenario '{scenario.id}' failed ({e}); using default")
        return f"{rules.title}: {fields}"


class ResponseNormalizer:
    """Ordered parser chain plus caption/alert post-processing."""

    stages: List[Callable[[str, ScenarioConfig], Optional[ParsedReply]]] = [
        parse_counting_json,
        parse_compact_json,
        parse_partial_json,
        parse_markdown,
        parse_fallback,
    ]

    def __init__(self, scenario: Optional[ScenarioConfig] = None):
        self._default = scenario or default_scenario()

    def parse(self, raw_text: Optional[str], scenario: ScenarioConfig) -> ParsedReply:
        text = raw_text or ""
        for stage in self.stages:
            parsed = stage(text, scenario)
            if parsed is not None:
                return parsed
        return parse_fallback(text, scenario)

    def normalize(self, raw_text: Optional[str], scenario: Optional[ScenarioConfig] = None, *,
                  edge_mode: bool = False, timestamp: int = 0) -> AnalysisResult:
        scenario = scenario or self._default
        parsed = self.parse(raw_text, scenario)
        log.debug(f"Reply parsed by stage '{parsed.parser}' (scenario={scenario.id})")

        counts = dict(parsed.counts)
        for k in scenario.metric_keys:
            counts.setdefault(k, 0)

        sections = _sections_of(scenario)
        lookup = _alias_lookup(sections)
        body = parsed.body.strip()
        spans = list(CAPTION_RE.finditer(body))
        if spans:
            caption_el = spans[0].group(0)
            caption = _TAG_RE.sub("", spans[0].group(1)).strip()
            rest = CAPTION_RE.sub("", body).strip()
        else:
            caption = _truncate(
                (parsed.title and _clean_caption_line(parsed.title))
                or _first_sentence(body, lookup)
                or _counts_summary(parsed.total, counts, scenario)
                or GENERIC_CAPTION
            )
            caption_el = f'<span class="ai-caption">{html.escape(caption, quote=False)}</span>'
            rest = body
        markup = caption_el + ("\n\n" + rest if rest else "")

        alert = parsed.alert or _synthesize_alert(parsed.total, counts, scenario)

        return AnalysisResult(
            timestamp=timestamp,
            total_persons=parsed.total,
            counts=counts,
            scene_description=markup,
            caption=caption,
            sections=split_sections(markup, sections),
            alert_message=alert,
            edge_mode=edge_mode,
            parser=parsed.parser,
        )

    def failure(self, status: str, error_text: str, scenario: Optional[ScenarioConfig] = None, *,
                edge_mode: bool = False, timestamp: int = 0) -> AnalysisResult:
        """Zero-count result kept for a frame whose analysis did not succeed."""
        scenario = scenario or self._default
        markup = f'<span class="ai-caption">{FAILURE_CAPTION}</span>\n\n{html.escape(error_text, quote=False)}'
        return AnalysisResult(
            timestamp=timestamp,
            counts={k: 0 for k in scenario.metric_keys},
            scene_description=markup,
            caption=FAILURE_CAPTION,
            edge_mode=edge_mode,
            parser="error",
            status=status,
            error=error_text,
        )
