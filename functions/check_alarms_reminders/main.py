import json

import functions_framework
from flask import Request, make_response

from roomsync.services.logging import setup_logging
from roomsync.services.alarms.cloud import functions as alarm_functions

TAG = __name__
logger = setup_logging()


def _ok(payload: dict, status: int = 200):
    resp = make_response(json.dumps(payload, ensure_ascii=False), status)
    resp.headers["Content-Type"] = "application/json; charset=utf-8"
    return resp


def _err(message: str, status: int = 500):
    return _ok({"error": message}, status=status)


@functions_framework.http
def check_alarms_reminders(request: Request):
    """
    HTTP Cloud Function invoked by Cloud Scheduler about once a minute.

    Fires every due alarm (at most one trigger per alarm per idempotency
    window) and notifies due reminders. Responds with the probe summary.
    """
    try:
        summary = alarm_functions.check_alarms_reminders(request)
    except Exception as exc:
        logger.bind(tag=TAG).exception("Alarm/reminder probe failed")
        return _err(str(exc) or exc.__class__.__name__, 500)
    return _ok(summary)
