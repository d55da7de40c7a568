from crmsync.models.contact import Contact
from crmsync.models.inbound_receipt import InboundReceipt
from crmsync.models.message import Message
from crmsync.models.order import Order
from crmsync.models.order_message import OrderMessage

__all__ = [
    "Contact",
    "Order",
    "Message",
    "OrderMessage",
    "InboundReceipt",
]
