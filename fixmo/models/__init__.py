"""
Database models - import all models here so Alembic can discover them.
"""
from fixmo.models.user import Customer, ServiceProvider
from fixmo.models.service_listing import ServiceListing
from fixmo.models.appointment import Appointment
from fixmo.models.backjob import BackjobApplication
from fixmo.models.conversation import Conversation, Message
from fixmo.models.push_token import PushToken
from fixmo.models.outbox import OutboxEvent

__all__ = [
    "Customer",
    "ServiceProvider",
    "ServiceListing",
    "Appointment",
    "BackjobApplication",
    "Conversation",
    "Message",
    "PushToken",
    "OutboxEvent",
]
