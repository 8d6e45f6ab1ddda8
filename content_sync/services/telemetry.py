from __future__ import annotations

from prometheus_client import Counter, Histogram

from content_sync.core.logging import log_event

APP_LABEL = "content-sync-engine"

sync_runs_total = Counter("content_sync_runs_total", "Sync runs by final status", ["app", "kind", "status"])
sync_records_total = Counter("content_sync_records_total", "Synced records by outcome", ["app", "kind", "outcome"])
sync_run_duration_seconds = Histogram("content_sync_run_duration_seconds", "Sync run duration (seconds)", ["app", "kind"])
knowledge_reprocess_total = Counter("knowledge_reprocess_total", "Knowledge source reprocess attempts", ["app", "result"])
knowledge_reprocess_duration_seconds = Histogram("knowledge_reprocess_duration_seconds", "Knowledge source reprocess duration (seconds)", ["app"])


def record_sync_run(*, agent_id: str, kind: str, status: str, duration_seconds: float, counts: dict[str, int]) -> None:
    sync_runs_total.labels(app=APP_LABEL, kind=kind, status=status).inc()
    sync_run_duration_seconds.labels(app=APP_LABEL, kind=kind).observe(max(duration_seconds, 0.0))
    for outcome, value in counts.items():
        if value:
            sync_records_total.labels(app=APP_LABEL, kind=kind, outcome=outcome).inc(value)
    log_event(
        "sync.run.finished",
        agent_id=agent_id,
        payload={"kind": kind, "status": status, "duration_ms": int(duration_seconds * 1000), **counts},
    )


def record_reprocess(*, source_id: str, result: str, duration_seconds: float) -> None:
    knowledge_reprocess_total.labels(app=APP_LABEL, result=result).inc()
    knowledge_reprocess_duration_seconds.labels(app=APP_LABEL).observe(max(duration_seconds, 0.0))
    log_event("knowledge.reprocess.finished", payload={"source_id": source_id, "result": result, "duration_ms": int(duration_seconds * 1000)})
