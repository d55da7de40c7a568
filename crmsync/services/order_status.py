from enum import Enum


class OrderStatus(str, Enum):
    UNSORTED = "unsorted"

    ACCEPTED_ANNA = "accepted_anna"
    ACCEPTED_KOSTYA = "accepted_kostya"
    ACCEPTED_STAS = "accepted_stas"
    ACCEPTED_LUCY = "accepted_lucy"

    IN_PROGRESS = "in_progress"
    SURVEY = "survey"

    TRANSFERRED_NIKITA = "transferred_nikita"
    TRANSFERRED_VAL = "transferred_val"
    TRANSFERRED_BEN = "transferred_ben"
    TRANSFERRED_FIN = "transferred_fin"

    PARTIALLY_COMPLETED = "partially_completed"
    POSTPONED = "postponed"

    CLIENT_REJECTED = "client_rejected"
    DUPLICATE = "duplicate"
    SCAMMER = "scammer"
    MODERATION = "moderation"

    COMPLETED = "completed"


STATUS_LABELS = {
    OrderStatus.UNSORTED: "Неразобранное",
    OrderStatus.ACCEPTED_ANNA: "Принято Анна",
    OrderStatus.ACCEPTED_KOSTYA: "Принято Костя",
    OrderStatus.ACCEPTED_STAS: "Принято Стас",
    OrderStatus.ACCEPTED_LUCY: "Принято Люси",
    OrderStatus.IN_PROGRESS: "Работа с клиентом",
    OrderStatus.SURVEY: "Опрос",
    OrderStatus.TRANSFERRED_NIKITA: "Передано Никите",
    OrderStatus.TRANSFERRED_VAL: "Передано Вал Александру",
    OrderStatus.TRANSFERRED_BEN: "Передано Бен Александру",
    OrderStatus.TRANSFERRED_FIN: "Передано Фин Александру",
    OrderStatus.PARTIALLY_COMPLETED: "Частично исполнена",
    OrderStatus.POSTPONED: "Перенос на завтра",
    OrderStatus.CLIENT_REJECTED: "Отказ клиента",
    OrderStatus.DUPLICATE: "Дубль или контакт",
    OrderStatus.SCAMMER: "Мошенник",
    OrderStatus.MODERATION: "На модерации",
    OrderStatus.COMPLETED: "Успешно реализована",
}

# New inbound messages never attach to a thread in one of these statuses.
TERMINAL_STATUSES = frozenset(
    {
        OrderStatus.COMPLETED,
        OrderStatus.CLIENT_REJECTED,
        OrderStatus.DUPLICATE,
        OrderStatus.SCAMMER,
    }
)


class UnknownStatusError(ValueError):
    def __init__(self, value: str):
        self.value = value
        super().__init__(f"Unknown order status: {value}")


def parse_status(value: str) -> OrderStatus:
    """Map a raw status string to OrderStatus. Raises UnknownStatusError."""
    try:
        return OrderStatus(value)
    except ValueError:
        raise UnknownStatusError(value) from None


def is_terminal(status: str | OrderStatus | None) -> bool:
    """Unknown or missing statuses count as active so a thread is never silently orphaned."""
    if status is None:
        return False
    try:
        return OrderStatus(status) in TERMINAL_STATUSES
    except ValueError:
        return False
