from html import escape

from .schemas import DueItem, OutboundMessage


def _date(item: DueItem) -> str:
    return item.event_at.strftime("%d.%m.%Y")


def _time(item: DueItem) -> str:
    return item.event_at.strftime("%H:%M")


def _wrap(first_name: str, paragraphs: str) -> str:
    return f"""
            <html>
            <body style='font-family: Arial, sans-serif; line-height: 1.6;'>
                <h2>Pozdrav {escape(first_name)},</h2>
                {paragraphs}
                <br/>
                <p>Srdacan pozdrav,<br/>Stronghold Tim</p>
            </body>
            </html>"""


def build_membership_expiry_message(item: DueItem, days_before: int) -> OutboundMessage:
    subject = (
        "Vasa clanarina istice sutra!"
        if days_before == 1
        else f"Vasa clanarina istice za {days_before} dana"
    )
    paragraphs = (
        f"<p>Obavjestavamo Vas da Vasa <strong>{escape(item.related_name)}</strong> clanarina istice\n"
        f"                   <strong>{_date(item)}</strong>.</p>\n"
        "                <p>Da biste nastavili koristiti usluge teretane Stronghold, "
        "molimo Vas da obnovite clanarinu.</p>"
    )
    return OutboundMessage(
        recipient_address=item.contact_email,
        subject=subject,
        body=_wrap(item.contact_first_name, paragraphs),
    )


def build_appointment_reminder_message(item: DueItem, days_before: int) -> OutboundMessage:
    subject = (
        "Vas termin je sutra!"
        if days_before == 1
        else f"Vas termin je za {days_before} dana"
    )
    paragraphs = (
        f"<p>Podsjecamo Vas da imate zakazan termin sa <strong>{escape(item.related_name)}</strong>\n"
        f"                   dana <strong>{_date(item)}</strong> u <strong>{_time(item)}</strong>.</p>\n"
        "                <p>Molimo Vas da dodjete na vrijeme.</p>"
    )
    return OutboundMessage(
        recipient_address=item.contact_email,
        subject=subject,
        body=_wrap(item.contact_first_name, paragraphs),
    )
