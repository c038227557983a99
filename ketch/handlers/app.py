import kopf
from logging import Logger
from ketch.types.settings import KETCH_GROUP, KETCH_VERSION
from ketch.controllers.queue import ReconcileQueue

APP_PLURAL = "apps"
FRAMEWORK_PLURAL = "frameworks"

DELETED = "DELETED"


@kopf.on.event(group=KETCH_GROUP, version=KETCH_VERSION, plural=APP_PLURAL)
async def on_app_event(event, name, memo: kopf.Memo, logger: Logger, **kwargs):
    """Queue the App for reconciliation on every change."""
    queue: ReconcileQueue = memo.queue
    if event.get("type") == DELETED:
        # The finalizer has been removed and the object is gone
        queue.forget(name)
        logger.debug(f"App {name} deleted")
        return
    queue.request(name)


@kopf.on.event(group=KETCH_GROUP, version=KETCH_VERSION, plural=FRAMEWORK_PLURAL)
async def on_framework_event(event, name, status, memo: kopf.Memo, logger: Logger, **kwargs):
    """Queue every member App of a changed Framework."""
    queue: ReconcileQueue = memo.queue
    apps = (status or {}).get("apps") or []
    for app_name in apps:
        queue.request(app_name)
    if apps:
        logger.debug(f"Framework {name} changed, queued {len(apps)} apps")
