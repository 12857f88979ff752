"""
Slot extraction for the booking draft.

Each field is pulled out of conversation text by an ordered list of rules;
the first rule yielding a structurally valid value wins. Rules are plain
``ExtractionRule(pattern, build)`` pairs so new patterns can be appended to
``RULES`` without touching the control flow.

Usage:
    ctx = ExtractionContext.build(today, professionals, services)
    extract("time", "pode ser às 14h?", ctx)          # → "14:00"
    draft = extract_draft(messages, ctx, phone="5549999214230")
    if draft.is_complete(): ...
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
import datetime
from datetime import date, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from agenda.core.config import settings
from agenda.models import Client, Conversation, Professional, Service
from agenda.models.enums import MessageRole
from agenda.services.confirmation import is_summary_message
from agenda.services.conversation_store import ConversationStore

logger = logging.getLogger(__name__)

SLOT_FIELDS = ("client_name", "professional_id", "service_id", "date", "time", "phone")

RECENT_INBOUND_WINDOW = 3

# Keywords of services most salons offer, tried when no service name is quoted
COMMON_SERVICE_KEYWORDS = ("corte", "barba", "escova", "manicure", "pedicure", "sobrancelha", "hidrata")

COMMON_NON_NAME_TOKENS = frozenset({
    "quero", "queria", "gostaria", "agendar", "agendamento", "marcar", "horário", "horario",
    "olá", "ola", "oi", "bom", "boa", "dia", "tarde", "noite", "obrigado", "obrigada",
    "sim", "não", "nao", "ok", "hoje", "amanhã", "amanha", "segunda", "terça", "terca",
    "quarta", "quinta", "sexta", "sábado", "sabado", "domingo", "feira", "data", "serviço",
    "servico", "profissional", "nome", "valor", "resumo", "está", "esta", "tudo", "correto",
    "responda", "para", "confirmar", "confirmo", "pode", "com", "por", "favor", "cliente",
    "perfeito", "ótimo", "otimo", "certo", "claro", "whatsapp", "pix", "reais", "qual", "que",
    "como", "onde", "quando", "vou", "tem", "temos", "meu", "minha", "sou", "seu", "sua",
    "aqui", "agenda", "agendado", "confirmado", "pagamento", "link", "the", "hello", "hi",
    "preciso", "posso", "tenho", "estou", "seria", "fazer", "consigo", "prefiro", "beleza",
    "valeu", "então", "entao", "mas", "uma", "quanto", "quais", "isso", "esse", "essa",
    "você", "voce", "vocês", "voces", "bem", "pois", "também", "tambem", "ainda", "depois",
})

NAME_WORD = r"[A-ZÀ-Ý][a-zà-ÿ]+"


@dataclass(frozen=True)
class Candidate:
    """A known professional or service the text may refer to."""
    id: uuid.UUID
    name: str


@dataclass(frozen=True)
class ExtractionContext:
    today: date
    professionals: tuple[Candidate, ...] = ()
    services: tuple[Candidate, ...] = ()
    stopwords: frozenset = COMMON_NON_NAME_TOKENS

    @classmethod
    def build(cls, today: date, professionals=(), services=()) -> "ExtractionContext":
        """Build a context whose name stoplist includes every known professional and service word."""
        professionals = tuple(professionals)
        services = tuple(services)
        known_words = {
            word
            for candidate in professionals + services
            for word in re.findall(r"\w+", candidate.name.lower())
        }
        return cls(
            today=today,
            professionals=professionals,
            services=services,
            stopwords=COMMON_NON_NAME_TOKENS | known_words,
        )


@dataclass(frozen=True)
class ExtractionRule:
    pattern: re.Pattern
    build: Callable[[re.Match, ExtractionContext], Any]

    def apply(self, text: str, ctx: ExtractionContext):
        for match in self.pattern.finditer(text):
            value = self.build(match, ctx)
            if value is not None:
                return value
        return None


@dataclass
class BookingDraft:
    client_name: str | None = None
    professional_id: uuid.UUID | None = None
    professional_name: str | None = None
    service_id: uuid.UUID | None = None
    service_name: str | None = None
    date: datetime.date | None = None
    time: str | None = None
    phone: str | None = None
    # field -> window/fallback the value came from
    sources: dict[str, str] = field(default_factory=dict)

    def missing_fields(self) -> list[str]:
        return [name for name in SLOT_FIELDS if getattr(self, name) in (None, "")]

    def is_complete(self) -> bool:
        return not self.missing_fields()

    def to_snapshot(self) -> dict:
        return {
            "client_name": self.client_name,
            "professional_id": str(self.professional_id) if self.professional_id else None,
            "professional_name": self.professional_name,
            "service_id": str(self.service_id) if self.service_id else None,
            "service_name": self.service_name,
            "date": self.date.isoformat() if self.date else None,
            "time": self.time,
            "phone": self.phone,
        }

    @classmethod
    def from_snapshot(cls, data: dict) -> "BookingDraft":
        return cls(
            client_name=data.get("client_name"),
            professional_id=uuid.UUID(data["professional_id"]) if data.get("professional_id") else None,
            professional_name=data.get("professional_name"),
            service_id=uuid.UUID(data["service_id"]) if data.get("service_id") else None,
            service_name=data.get("service_name"),
            date=date.fromisoformat(data["date"]) if data.get("date") else None,
            time=data.get("time"),
            phone=data.get("phone"),
            sources={"snapshot": "payment_request"},
        )


# ============== Phone ==============

def normalize_phone(value: str, country_code: str | None = None) -> str:
    """Strip a channel identity down to digits and apply the country prefix.

    Examples:
        >>> normalize_phone("554999214230@s.whatsapp.net")
        '554999214230'
        >>> normalize_phone("(49) 99921-4230")
        '5549999214230'
    """
    country_code = settings.DEFAULT_COUNTRY_CODE if country_code is None else country_code
    digits = re.sub(r"\D", "", (value or "").split("@")[0])
    if not digits:
        return ""
    # 10-11 digits is area code plus subscriber number; 12-13 already carries the country code
    if country_code and len(digits) in (10, 11):
        digits = country_code + digits
    return digits


def placeholder_name(phone: str) -> str:
    return f"Cliente {phone[-4:]}" if phone else "Cliente"


# ============== Date rules ==============

WEEKDAY_NAMES = {
    "segunda": 0, "monday": 0,
    "terça": 1, "terca": 1, "tuesday": 1,
    "quarta": 2, "wednesday": 2,
    "quinta": 3, "thursday": 3,
    "sexta": 4, "friday": 4,
    "sábado": 5, "sabado": 5, "saturday": 5,
    "domingo": 6, "sunday": 6,
}


def next_weekday(today: date, weekday: int) -> date:
    """Next future occurrence of ``weekday``; today's own weekday rolls to next week."""
    days_ahead = (weekday - today.weekday()) % 7
    if days_ahead == 0:
        days_ahead = 7
    return today + timedelta(days=days_ahead)


def _absolute_date(match: re.Match, ctx: ExtractionContext) -> date | None:
    day, month, year = (int(group) for group in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _day_month(match: re.Match, ctx: ExtractionContext) -> date | None:
    day, month = (int(group) for group in match.groups())
    try:
        candidate = date(ctx.today.year, month, day)
    except ValueError:
        return None
    if candidate < ctx.today:
        try:
            candidate = date(ctx.today.year + 1, month, day)
        except ValueError:
            return None
    return candidate


def _relative_days(days: int) -> Callable[[re.Match, ExtractionContext], date]:
    return lambda match, ctx: ctx.today + timedelta(days=days)


def _weekday(match: re.Match, ctx: ExtractionContext) -> date | None:
    weekday = WEEKDAY_NAMES.get(match.group(1).lower())
    if weekday is None:
        return None
    return next_weekday(ctx.today, weekday)


DATE_RULES = [
    ExtractionRule(re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b"), _absolute_date),
    ExtractionRule(re.compile(r"(?<![\d/])(\d{1,2})/(\d{1,2})\b(?!/)"), _day_month),
    ExtractionRule(re.compile(r"\b(?:hoje|today)\b", re.IGNORECASE), _relative_days(0)),
    ExtractionRule(re.compile(r"\bdepois\s+de\s+amanh[ãa]\b", re.IGNORECASE), _relative_days(2)),
    ExtractionRule(re.compile(r"\b(?:amanh[ãa]|tomorrow)\b", re.IGNORECASE), _relative_days(1)),
    ExtractionRule(
        re.compile(
            r"\b(segunda|ter[çc]a|quarta|quinta|sexta|s[áa]bado|domingo|"
            r"monday|tuesday|wednesday|thursday|friday|saturday|sunday)(?:-feira)?\b",
            re.IGNORECASE,
        ),
        _weekday,
    ),
]


# ============== Time rules ==============

def _clock(match: re.Match, ctx: ExtractionContext) -> str | None:
    hour = int(match.group(1))
    minute_group = match.group(2) if match.re.groups >= 2 else None
    minute = int(minute_group) if minute_group else 0
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return f"{hour:02d}:{minute:02d}"


TIME_RULES = [
    ExtractionRule(re.compile(r"hor[áa]rio[\s:*_\-]*(\d{1,2}):(\d{2})", re.IGNORECASE), _clock),
    ExtractionRule(re.compile(r"\b[àa]s\s+(\d{1,2}):(\d{2})\b", re.IGNORECASE), _clock),
    ExtractionRule(re.compile(r"(?<![\d/:])(\d{1,2}):(\d{2})(?!\d)"), _clock),
    ExtractionRule(re.compile(r"\b[àa]s\s+(\d{1,2})\b(?!:)", re.IGNORECASE), _clock),
    ExtractionRule(re.compile(r"\b(\d{1,2})\s?(?:h|hs|horas?)(\d{2})?\b", re.IGNORECASE), _clock),
    ExtractionRule(re.compile(r"(?<![\d/:.,])\b(\d{1,2})\b(?![\d/:.,])"), _clock),
]


# ============== Client name rules ==============

def _labelled_name(match: re.Match, ctx: ExtractionContext) -> str | None:
    value = match.group(1).strip(" *_.!:-")
    if not value or not re.search(r"[^\W\d_]", value):
        return None
    if value.lower() in ctx.stopwords:
        return None
    return value


def _generic_name(match: re.Match, ctx: ExtractionContext) -> str | None:
    value = " ".join(group for group in match.groups() if group)
    if any(word.lower() in ctx.stopwords for word in value.split()):
        return None
    if len(value) < 3:
        return None
    return value


NAME_RULES = [
    ExtractionRule(re.compile(r"\b(?:nome|cliente)\s*:\s*\**\s*([^\n,*]+)", re.IGNORECASE), _labelled_name),
    ExtractionRule(
        re.compile(rf"(?:Ótimo|Otimo|Perfeito|Certo|Obrigad[oa]|Olá|Ola|Oi)\s*,\s+({NAME_WORD}(?:\s+{NAME_WORD})?)\s*[,!.]"),
        _generic_name,
    ),
    ExtractionRule(
        re.compile(rf"(?i:\b(?:meu nome [ée]|me chamo|sou o|sou a|sou))\s+({NAME_WORD}(?:\s+{NAME_WORD})?)"),
        _generic_name,
    ),
    ExtractionRule(re.compile(rf"\b({NAME_WORD})\s+({NAME_WORD})\b"), _generic_name),
]

# A lone capitalized word; only trusted in what the contact wrote most recently
SINGLE_WORD_NAME_RULE = ExtractionRule(re.compile(rf"\b({NAME_WORD})\b"), _generic_name)


# ============== Professional / service matchers ==============

Matcher = Callable[[str, ExtractionContext], Optional[Candidate]]


def _contained(candidates: tuple[Candidate, ...], text: str) -> Candidate | None:
    lowered = text.lower()
    for candidate in candidates:
        if candidate.name and candidate.name.lower() in lowered:
            return candidate
    return None


def _by_name_token(candidates: tuple[Candidate, ...], text: str) -> Candidate | None:
    words = set(re.findall(r"\w+", text.lower()))
    for candidate in candidates:
        for token in candidate.name.lower().split():
            if len(token) >= 3 and token in words:
                return candidate
    return None


def _by_common_keyword(candidates: tuple[Candidate, ...], text: str) -> Candidate | None:
    lowered = text.lower()
    for keyword in COMMON_SERVICE_KEYWORDS:
        if keyword not in lowered:
            continue
        for candidate in candidates:
            if keyword in candidate.name.lower():
                return candidate
    return None


RULES: dict[str, list] = {
    "date": DATE_RULES,
    "time": TIME_RULES,
    "client_name": NAME_RULES,
    "professional": [lambda text, ctx: _contained(ctx.professionals, text)],
    "service": [lambda text, ctx: _contained(ctx.services, text)],
}

# Tried across every window only after the primary rules found nothing
FALLBACK_RULES: dict[str, list] = {
    "professional": [lambda text, ctx: _by_name_token(ctx.professionals, text)],
    "service": [lambda text, ctx: _by_common_keyword(ctx.services, text)],
}


def _run(rules: list, text: str, ctx: ExtractionContext):
    for rule in rules:
        value = rule.apply(text, ctx) if isinstance(rule, ExtractionRule) else rule(text, ctx)
        if value is not None:
            return value
    return None


def extract(field_name: str, text: str, ctx: ExtractionContext):
    """Run the rule cascade for one field over ``text``; None when nothing matches."""
    if not text:
        return None
    return _run(RULES[field_name], text, ctx)


# ============== Draft assembly ==============

def _windows(messages: list[dict]) -> list[tuple[str, str, str]]:
    """(window name, full text, contact-only text), highest priority first."""
    windows = []

    for message in reversed(messages):
        if message["role"] == MessageRole.OUTBOUND.value and is_summary_message(message["content"]):
            windows.append(("summary", message["content"], message["content"]))
            break

    inbound = [m["content"] for m in messages if m["role"] == MessageRole.INBOUND.value]
    # Newest first so a changed mind wins over the earlier request
    recent = "\n".join(reversed(inbound[-RECENT_INBOUND_WINDOW:]))
    windows.append(("recent", recent, recent))

    full = "\n".join(m["content"] for m in messages)
    windows.append(("conversation", full, "\n".join(inbound)))
    return windows


def extract_draft(messages: list[dict], ctx: ExtractionContext, phone: str | None = None) -> BookingDraft:
    """
    Rebuild the booking draft from a conversation (oldest message first).

    Pure and read-only; an incomplete draft means "keep collecting".
    """
    draft = BookingDraft(phone=phone or None)
    if phone:
        draft.sources["phone"] = "channel"

    windows = _windows(messages)

    for window, text, contact_text in windows:
        if draft.date is None:
            draft.date = extract("date", text, ctx)
            if draft.date:
                draft.sources["date"] = window
        if draft.time is None:
            draft.time = extract("time", text, ctx)
            if draft.time:
                draft.sources["time"] = window
        if draft.client_name is None:
            # Names are only read from what the contact wrote or from the recap
            draft.client_name = extract("client_name", contact_text, ctx)
            if draft.client_name:
                draft.sources["client_name"] = window

    if draft.client_name is None:
        recent_text = next(contact_text for window, _, contact_text in windows if window == "recent")
        draft.client_name = SINGLE_WORD_NAME_RULE.apply(recent_text, ctx) if recent_text else None
        if draft.client_name:
            draft.sources["client_name"] = "recent_single_word"

    _resolve_candidate(draft, windows, ctx, "professional")
    _resolve_candidate(draft, windows, ctx, "service")

    return draft


def _resolve_candidate(draft: BookingDraft, windows, ctx: ExtractionContext, kind: str) -> None:
    found, source = None, None
    for rules in (RULES[kind], FALLBACK_RULES[kind]):
        for window, text, _ in windows:
            found = _run(rules, text, ctx)
            if found:
                source = window if rules is RULES[kind] else f"{window}_fallback"
                break
        if found:
            break

    if found is None and kind == "service" and ctx.services:
        found, source = ctx.services[0], "default"

    if found is None:
        return

    setattr(draft, f"{kind}_id", found.id)
    setattr(draft, f"{kind}_name", found.name)
    draft.sources[f"{kind}_id"] = source


async def build_draft(
    db: AsyncSession,
    conversation: Conversation,
    today: date,
    history_limit: int | None = None,
) -> BookingDraft:
    """Load what extraction needs for a conversation and apply the name fallbacks."""

    messages = await ConversationStore(db).history(
        conversation.id, limit=history_limit or settings.HISTORY_WINDOW_MESSAGES
    )

    result = await db.execute(
        select(Professional)
        .where(Professional.business_id == conversation.business_id, Professional.is_active == True)
        .order_by(Professional.created_at)
    )
    professionals = [Candidate(p.id, p.name) for p in result.scalars().all()]

    result = await db.execute(
        select(Service)
        .where(Service.business_id == conversation.business_id, Service.is_active == True)
        .order_by(Service.created_at)
    )
    services = [Candidate(s.id, s.service_name) for s in result.scalars().all()]

    ctx = ExtractionContext.build(today, professionals, services)
    phone = normalize_phone(conversation.phone_number)
    draft = extract_draft(messages, ctx, phone=phone)

    if not draft.client_name:
        client = await find_client_by_phone(db, conversation.business_id, phone)
        if client:
            draft.client_name = client.name
            draft.sources["client_name"] = "client_record"
        elif conversation.contact_name:
            draft.client_name = conversation.contact_name
            draft.sources["client_name"] = "contact_name"
        else:
            draft.client_name = placeholder_name(phone)
            draft.sources["client_name"] = "placeholder"

    logger.debug("Draft rebuilt: missing=%s sources=%s", draft.missing_fields(), draft.sources)
    return draft


async def find_client_by_phone(db: AsyncSession, business_id: uuid.UUID, phone: str) -> Client | None:
    if not phone:
        return None
    result = await db.execute(
        select(Client)
        .where(Client.business_id == business_id, Client.phone == phone)
        .order_by(Client.created_at.desc())
    )
    return result.scalars().first()
