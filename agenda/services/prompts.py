from datetime import datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agenda.core.config import settings

WEEKDAYS_PT = ["segunda-feira", "terça-feira", "quarta-feira", "quinta-feira", "sexta-feira", "sábado", "domingo"]

TRANSCRIPTION_FALLBACK = (
    "Desculpe, não consegui entender o seu áudio. 🙏 "
    "Pode me enviar sua mensagem por texto, por favor?"
)


def local_now(timezone_name: str | None = None) -> datetime:
    """Current wall-clock time in the tenant's timezone."""
    try:
        zone = ZoneInfo(timezone_name or settings.DEFAULT_TIMEZONE)
    except ZoneInfoNotFoundError:
        zone = ZoneInfo(settings.DEFAULT_TIMEZONE)
    return datetime.now(zone)


def date_context(now: datetime) -> str:
    tomorrow = now + timedelta(days=1)
    return f"""Informações de data/hora (USE PARA INTERPRETAR DATAS):
- Hoje é {WEEKDAYS_PT[now.weekday()]}, {now.strftime('%d/%m/%Y')}
- Amanhã é {WEEKDAYS_PT[tomorrow.weekday()]}, {tomorrow.strftime('%d/%m/%Y')}
- Agora são {now.strftime('%H:%M')}"""


SUMMARY_INSTRUCTIONS = """Quando tiver TODOS os dados (nome do cliente, serviço, profissional, data e horário),
apresente o resumo EXATAMENTE neste formato e aguarde a confirmação:

📋 *Resumo do Agendamento*
👤 Nome: <nome do cliente>
✅ Serviço: <serviço>
👨 Profissional: <profissional>
📅 Data: <dd/mm/aaaa>
⏰ Horário: <HH:MM>
💰 Valor: R$ <valor>

Está tudo correto? Responda SIM para confirmar.

Regras:
- Nunca diga que o agendamento está confirmado antes de o cliente responder SIM.
- Ofereça apenas horários livres da grade abaixo.
- Responda sempre em português, de forma breve e cordial."""


def build_system_prompt(business, professionals, services, grid: str, now: datetime) -> str:
    """System prompt for one dialogue turn."""
    service_lines = "\n".join(
        f"- {s.service_name}: R$ {s.base_price or 0} ({s.duration_minutes or settings.DEFAULT_DURATION_MINUTES} min)"
        for s in services
    ) or "- (nenhum serviço cadastrado)"
    professional_lines = "\n".join(f"- {p.name}" for p in professionals) or "- (nenhum profissional cadastrado)"

    persona = business.ai_agent_prompt or (
        f"Você é a assistente virtual de agendamentos de {business.business_name} no WhatsApp."
    )

    sections = [
        persona,
        date_context(now),
        f"Serviços:\n{service_lines}",
        f"Profissionais:\n{professional_lines}",
    ]
    if business.opening_hours_text:
        sections.append(f"Horário de funcionamento:\n{business.opening_hours_text}")
    sections.append(f"Horários livres nos próximos dias:\n{grid}")
    sections.append(SUMMARY_INSTRUCTIONS)

    return "\n\n".join(sections)


def fallback_message(business, professionals) -> str:
    """Static reply used when the language model is unavailable."""
    lines = [f"Olá! Obrigado por entrar em contato com {business.business_name}. 😊"]
    if business.opening_hours_text:
        lines.append(f"\n🕐 Horário de funcionamento:\n{business.opening_hours_text}")
    if professionals:
        names = "\n".join(f"• {p.name}" for p in professionals)
        lines.append(f"\n👨 Nossos profissionais:\n{names}")
    lines.append("\nPara agendar, informe o serviço, o profissional, a data e o horário desejados.")
    return "\n".join(lines)
