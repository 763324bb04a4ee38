from cms_kernel.models.settings import CmsSetting
from cms_kernel.models.event_queue import AnalyticsEventQueueItem, DomainEventQueueItem, QueueStatus
from cms_kernel.models.webhook import WebhookDelivery, WebhookDeliveryStatus, WebhookSubscription
from cms_kernel.models.webcallback import WebcallbackEvent, WebcallbackStatus
from cms_kernel.models.schedule import ScheduledAction, SchedulerLock, ScheduleOwnerType
from cms_kernel.models.communication import (
    CommunicationAttempt,
    CommunicationMessage,
    CommunicationStatus,
)

__all__ = [
    "CmsSetting",
    "AnalyticsEventQueueItem",
    "DomainEventQueueItem",
    "QueueStatus",
    "WebhookSubscription",
    "WebhookDelivery",
    "WebhookDeliveryStatus",
    "WebcallbackEvent",
    "WebcallbackStatus",
    "ScheduledAction",
    "SchedulerLock",
    "ScheduleOwnerType",
    "CommunicationMessage",
    "CommunicationAttempt",
    "CommunicationStatus",
]
