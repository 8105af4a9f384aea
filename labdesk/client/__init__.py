from labdesk.client.autosave import FieldAutosaver
from labdesk.client.gateway import HttpLabGateway, LabGateway
from labdesk.client.queue import fetch_queue
from labdesk.client.session import BatchSaveReport, ResultEntrySession, ResultRow

__all__ = [
    "BatchSaveReport",
    "FieldAutosaver",
    "HttpLabGateway",
    "LabGateway",
    "ResultEntrySession",
    "ResultRow",
    "fetch_queue",
]
