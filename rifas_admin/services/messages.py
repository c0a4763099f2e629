"""Textos de WhatsApp para compradores y para el administrador."""
from typing import Iterable, Optional

INVALID_PAYMENT = "invalid_payment"
MALICIOUS = "malicious"
REJECTION_REASONS = (INVALID_PAYMENT, MALICIOUS)

_INVALID_PAYMENT_MSG = (
    "Lastimosamente no pudimos verificar tu pago. Por favor, revisa los datos de tu "
    "comprobante e intenta tu compra de nuevo. Si crees que se trata de un error, contáctanos."
)
_MALICIOUS_MSG = (
    "Lastimosamente no pudimos verificar tu pago. Tu compra ha sido marcada como "
    "rechazada por nuestro sistema."
)


def format_price(amount: float, currency: str) -> str:
    return f"${amount:.2f}" if currency == "USD" else f"Bs. {amount:.2f}"


def purchase_received(buyer_name: str, raffle_name: str) -> str:
    return (
        f"¡Hola, {buyer_name}! 👋\n\n"
        f"Recibimos tu solicitud de compra para la rifa *{raffle_name}*.\n\n"
        "Tu pago está siendo verificado. Te notificaremos por aquí una vez que sea aprobado. "
        "¡Gracias por participar!"
    )


def tickets_confirmed(buyer_name: str, raffle_name: str, ticket_numbers: Iterable[str], base_url: str) -> str:
    numbers = ", ".join(sorted(ticket_numbers))
    return (
        f"¡Hola, {buyer_name}! 🎉\n\n"
        f"Tu compra para la rifa *{raffle_name}* ha sido confirmada.\n\n"
        f"Aquí están tus tickets de la suerte:\n\n*{numbers}*\n\n"
        f"Puedes ver el top de compradores aquí:\n{base_url.rstrip('/')}/top-compradores\n\n"
        "¡Participa y gana! 😉"
    )


def purchase_rejected(buyer_name: str, reason: str, comment: Optional[str] = None) -> str:
    main = _INVALID_PAYMENT_MSG if reason == INVALID_PAYMENT else _MALICIOUS_MSG
    extra = f"*Motivo adicional:* {comment}\n\n" if comment else ""
    return f"Hola, {buyer_name} 👋\n\n{main}\n\n{extra}El equipo de Llevateloconjorvi."


def winner(buyer_name: str, raffle_name: str, ticket_number: str) -> str:
    return (
        f"🎉 ¡Felicidades, {buyer_name}! 🎉\n\n"
        f"¡Eres el afortunado ganador de la rifa *{raffle_name}* con tu ticket número *{ticket_number}*! 🥳\n\n"
        "Pronto nos pondremos en contacto contigo para coordinar la entrega de tu premio. "
        "¡Gracias por participar!"
    )


def new_raffle(subscriber_name: str, raffle_name: str, price: str, url: str) -> str:
    return (
        f"¡Hola {subscriber_name}! 👋\n\n"
        f"🎉 ¡Ya está disponible nuestra nueva rifa: *{raffle_name}*!\n\n"
        f"Puedes ganar un premio increíble por solo *{price}*.\n\n"
        f"¡No te quedes fuera! Participa ahora mismo entrando a este enlace:\n{url}\n\n"
        "¡Mucha suerte! 🍀"
    )


# ---------- Top 5 de compradores ----------
def top_leader(buyer_name: str) -> str:
    return (
        f"🏆 ¡Felicidades, {buyer_name}! Has alcanzado el primer puesto en el Top 5 de compradores. "
        "¡Sigue así para ganar el gran premio de 1000$ al primer lugar!"
    )


def top_entered(buyer_name: str, tickets_to_lead: int) -> str:
    return (
        f"🔥 ¡Felicidades, {buyer_name}! Has entrado al Top 5. Para alcanzar el primer lugar y superar "
        f"al líder, necesitas comprar {tickets_to_lead} ticket(s) más. ¡No te rindas!"
    )


def top_overtaken(buyer_name: str, rival_name: str, tickets_to_recover: int) -> str:
    return (
        f"⚔️ ¡Atención, {buyer_name}! El comprador {rival_name} te ha superado en el ranking. "
        f"Compra {tickets_to_recover} ticket(s) para recuperar tu posición. ¡La competencia está reñida!"
    )


# ---------- Admin ----------
def premium_ticket_alert(buyer_name: str, raffle_name: str, ticket_numbers: Iterable[str]) -> str:
    numbers = ", ".join(sorted(ticket_numbers))
    return (
        '🚨 ¡Alerta de Ganador "Ticket Premium"! 🚨\n\n'
        f"El comprador *{buyer_name}* acaba de asegurar el ticket ganador número *{numbers}* "
        f'para la rifa "{raffle_name}".\n\n'
        "¡Has encontrado a uno de los ganadores de $100! 💸"
    )
