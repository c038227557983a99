import datetime
import kopf


@kopf.on.probe(id="now")
def get_current_timestamp(**kwargs):
    return datetime.datetime.now(datetime.timezone.utc).isoformat()


@kopf.on.probe(id="watchers")
def get_active_watchers(memo: kopf.Memo, **kwargs):
    registry = getattr(memo, "registry", None)
    return len(registry) if registry is not None else 0
