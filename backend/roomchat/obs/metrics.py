"""Central registry for Prometheus metrics used across the chat core."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

MESSAGES_SENT = Counter(
	"roomchat_messages_sent_total",
	"Messages written by the send intent",
	["attachment"],
)

ATTACHMENTS_SETTLED = Counter(
	"roomchat_attachments_settled_total",
	"Attachment uploads settled per kind and terminal state",
	["kind", "state"],
)

ATTACHMENT_UPLOAD_RETRIES = Counter(
	"roomchat_attachment_upload_retries_total",
	"Upload attempts retried after a transient failure",
	["kind"],
)

ATTACHMENT_UPLOAD_LATENCY = Histogram(
	"roomchat_attachment_upload_duration_seconds",
	"Time from begin_upload to settlement",
	["kind"],
	buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

EDITS = Counter(
	"roomchat_edits_total",
	"Edit commits by outcome",
	["outcome"],
)

MESSAGE_BLOB_DELETE_FAILURES = Counter(
	"roomchat_message_blob_delete_failures_total",
	"Blob deletions that failed while deleting a single message",
	["kind"],
)

ROOM_CASCADES = Counter(
	"roomchat_room_cascades_total",
	"Room cascade deletions by outcome",
	["outcome"],
)

ROOM_CASCADE_FAILURES = Counter(
	"roomchat_room_cascade_failures_total",
	"Individual deletions that failed inside a room cascade",
	["group"],
)

EXTERNAL_CALLS = Counter(
	"roomchat_external_calls_total",
	"Calls to translation / speech collaborators",
	["service", "outcome"],
)


def inc_message_sent(attachment_kind: str | None) -> None:
	MESSAGES_SENT.labels(attachment=attachment_kind or "none").inc()


def observe_attachment_settled(kind: str, state: str, elapsed_seconds: float) -> None:
	ATTACHMENTS_SETTLED.labels(kind=kind, state=state).inc()
	ATTACHMENT_UPLOAD_LATENCY.labels(kind=kind).observe(max(0.0, elapsed_seconds))


def inc_upload_retry(kind: str) -> None:
	ATTACHMENT_UPLOAD_RETRIES.labels(kind=kind).inc()


def inc_edit(outcome: str) -> None:
	EDITS.labels(outcome=outcome).inc()


def inc_message_blob_delete_failure(kind: str) -> None:
	MESSAGE_BLOB_DELETE_FAILURES.labels(kind=kind).inc()


def inc_room_cascade(outcome: str) -> None:
	ROOM_CASCADES.labels(outcome=outcome).inc()


def inc_room_cascade_failure(group: str) -> None:
	ROOM_CASCADE_FAILURES.labels(group=group).inc()


def inc_external_call(service: str, outcome: str) -> None:
	EXTERNAL_CALLS.labels(service=service, outcome=outcome).inc()
