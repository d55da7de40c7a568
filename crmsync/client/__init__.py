from crmsync.client.operator_session import OperatorSession
from crmsync.client.timeline import MessageTimeline, TimelineEntry
