"""Tests for the rule-cascade slot extractor."""

import uuid
from datetime import date

import pytest

from agenda.models.enums import MessageRole
from agenda.services.conversation_store import ConversationStore
from agenda.services.slot_extractor import (
    BookingDraft,
    Candidate,
    ExtractionContext,
    build_draft,
    extract,
    extract_draft,
    next_weekday,
    normalize_phone,
    placeholder_name,
)

WEDNESDAY = date(2026, 10, 14)
MONDAY = date(2026, 10, 12)

MAGNUS = Candidate(uuid.uuid4(), "Magnus")
ANA = Candidate(uuid.uuid4(), "Ana Paula")
CORTE = Candidate(uuid.uuid4(), "Corte de cabelo")
BARBA = Candidate(uuid.uuid4(), "Barba")


@pytest.fixture
def ctx():
    return ExtractionContext.build(WEDNESDAY, [MAGNUS, ANA], [CORTE, BARBA])


class TestDateResolution:

    def test_weekday_resolves_to_upcoming_occurrence(self, ctx):
        assert extract("date", "pode ser sábado?", ctx) == date(2026, 10, 17)

    def test_hoje_is_today(self, ctx):
        assert extract("date", "tem horário hoje?", ctx) == WEDNESDAY

    def test_same_weekday_rolls_to_next_week(self):
        monday_ctx = ExtractionContext.build(MONDAY)
        assert extract("date", "segunda às 10", monday_ctx) == date(2026, 10, 19)

    def test_amanha_and_depois_de_amanha(self, ctx):
        assert extract("date", "amanhã de manhã", ctx) == date(2026, 10, 15)
        assert extract("date", "depois de amanhã", ctx) == date(2026, 10, 16)

    def test_absolute_date_wins_over_keywords(self, ctx):
        assert extract("date", "hoje não, pode ser 20/11/2026", ctx) == date(2026, 11, 20)

    def test_day_month_in_the_past_rolls_to_next_year(self, ctx):
        assert extract("date", "dia 05/01", ctx) == date(2027, 1, 5)

    def test_invalid_date_is_skipped(self, ctx):
        assert extract("date", "31/02/2026", ctx) is None

    def test_english_weekday_with_feira_suffix(self, ctx):
        assert extract("date", "friday please", ctx) == date(2026, 10, 16)
        assert extract("date", "sexta-feira", ctx) == date(2026, 10, 16)

    def test_next_weekday_helper(self):
        assert next_weekday(WEDNESDAY, 2) == date(2026, 10, 21)
        assert next_weekday(WEDNESDAY, 3) == date(2026, 10, 15)


class TestTimeExtraction:

    @pytest.mark.parametrize("text,expected", [
        ("Horário: 15:45", "15:45"),
        ("pode ser às 14:00?", "14:00"),
        ("14:30 está bom", "14:30"),
        ("às 9", "09:00"),
        ("lá pelas 14h30", "14:30"),
        ("umas 16h", "16:00"),
    ])
    def test_patterns(self, ctx, text, expected):
        assert extract("time", text, ctx) == expected

    def test_out_of_range_time_is_rejected(self, ctx):
        assert extract("time", "25:00", ctx) is None

    def test_labelled_time_wins(self, ctx):
        assert extract("time", "às 10:00... Horário: 11:30", ctx) == "11:30"


class TestNameExtraction:

    def test_labelled_name(self, ctx):
        assert extract("client_name", "Nome: Maria Souza\nServiço: Barba", ctx) == "Maria Souza"

    def test_self_introduction(self, ctx):
        text = "Quero agendar corte com Magnus sábado às 14:00, sou João Silva"
        assert extract("client_name", text, ctx) == "João Silva"

    def test_polite_opener(self, ctx):
        assert extract("client_name", "Ótimo, Carlos, vou verificar", ctx) == "Carlos"

    def test_professional_and_common_words_are_not_names(self, ctx):
        assert extract("client_name", "Quero agendar com Magnus", ctx) is None


class TestCandidates:

    def test_professional_by_containment(self, ctx):
        draft = extract_draft([{"role": "user", "content": "com a Ana Paula por favor"}], ctx)
        assert draft.professional_id == ANA.id

    def test_service_keyword_fallback(self, ctx):
        draft = extract_draft([{"role": "user", "content": "quero um corte"}], ctx)
        assert draft.service_id == CORTE.id
        assert draft.sources["service_id"] == "recent_fallback"

    def test_service_defaults_to_first(self, ctx):
        draft = extract_draft([{"role": "user", "content": "oi"}], ctx)
        assert draft.service_id == CORTE.id
        assert draft.sources["service_id"] == "default"


class TestDraftAssembly:

    def test_summary_window_has_priority(self, ctx):
        messages = [
            {"role": "user", "content": "Quero barba com Magnus sexta às 10:00, sou Pedro Alves"},
            {"role": "assistant", "content": (
                "👤 Nome: Pedro Alves\n✅ Serviço: Barba\n👨 Profissional: Magnus\n"
                "📅 Data: 17/10/2026\n⏰ Horário: 11:00\n\nEstá tudo correto? Responda SIM para confirmar."
            )},
            {"role": "user", "content": "sim"},
        ]
        draft = extract_draft(messages, ctx, phone="554999214230")

        assert draft.is_complete()
        assert draft.date == date(2026, 10, 17)
        assert draft.time == "11:00"
        assert draft.service_id == BARBA.id
        assert draft.sources["date"] == "summary"

    def test_incomplete_draft_is_returned_not_raised(self, ctx):
        draft = extract_draft([{"role": "user", "content": "oi, tudo bem?"}], ctx)
        assert not draft.is_complete()
        assert {"date", "time", "professional_id", "phone"} <= set(draft.missing_fields())

    def test_snapshot_round_trip_keeps_types(self, ctx):
        draft = BookingDraft(
            client_name="Ana", professional_id=MAGNUS.id, professional_name="Magnus",
            service_id=BARBA.id, service_name="Barba", date=WEDNESDAY, time="10:00",
            phone="554999214230",
        )
        restored = BookingDraft.from_snapshot(draft.to_snapshot())
        assert restored.date == WEDNESDAY
        assert restored.professional_id == MAGNUS.id
        assert restored.is_complete()


class TestPhone:

    def test_channel_identity(self):
        assert normalize_phone("554999214230@s.whatsapp.net") == "554999214230"

    def test_local_number_gets_country_code(self):
        assert normalize_phone("(49) 99921-4230") == "5549999214230"

    def test_placeholder_name(self):
        assert placeholder_name("554999214230") == "Cliente 4230"

    def test_area_code_55_still_gets_country_code(self):
        assert normalize_phone("(55) 99921-4230") == "5555999214230"
        assert normalize_phone("5555999214230") == "5555999214230"


class TestDraftDefaults:

    def test_new_draft_is_empty(self):
        draft = BookingDraft()
        assert draft.date is None
        assert "date" in draft.missing_fields()


class TestNameFallbacks:

    def test_sentence_opener_is_not_a_name(self, ctx):
        draft = extract_draft([{"role": "user", "content": "Preciso de um corte"}], ctx)
        assert draft.client_name is None

    def test_single_word_answer_is_a_name(self, ctx):
        messages = [
            {"role": "assistant", "content": "Qual o seu nome?"},
            {"role": "user", "content": "Carlos"},
        ]
        draft = extract_draft(messages, ctx)
        assert draft.client_name == "Carlos"
        assert draft.sources["client_name"] == "recent_single_word"

    def test_single_word_outside_recent_messages_is_ignored(self, ctx):
        messages = [
            {"role": "user", "content": "Carlos"},
            {"role": "user", "content": "corte"},
            {"role": "user", "content": "sábado"},
            {"role": "user", "content": "às 10"},
        ]
        assert extract_draft(messages, ctx).client_name is None

    @pytest.mark.asyncio
    async def test_push_name_used_when_text_has_no_name(self, db, seed):
        store = ConversationStore(db)
        conversation = await store.get_or_create(
            seed.business.id, seed.instance.id, "554999214230", contact_name="João"
        )
        await store.append(conversation, MessageRole.INBOUND, "Preciso de um corte")
        await db.commit()

        draft = await build_draft(db, conversation, WEDNESDAY)

        assert draft.client_name == "João"
        assert draft.sources["client_name"] == "contact_name"


class TestRecentWindowOrder:

    def test_latest_request_wins(self, ctx):
        messages = [
            {"role": "user", "content": "pode ser às 14:00?"},
            {"role": "assistant", "content": "Claro."},
            {"role": "user", "content": "melhor às 16:00"},
        ]
        assert extract_draft(messages, ctx).time == "16:00"
