import asyncio

import pytest

from roomchat.domain.chat import attachments as attachments_module
from roomchat.domain.chat.exceptions import (
    AlreadyEdited,
    ExternalServiceFailure,
    MessageNotFound,
    RoomNotFound,
    ValidationError,
)
from roomchat.domain.chat.models import AUDIO, FAILED, IMAGE, PENDING, RESOLVED, AttachmentDraft, message_path


@pytest.mark.asyncio
async def test_send_requires_text_or_attachment(core, room, documents):
    with pytest.raises(ValidationError) as excinfo:
        await core.messages.send(room.id, "alice", "   ")
    assert excinfo.value.detail == "text_or_attachment_required"
    with pytest.raises(ValidationError) as excinfo:
        await core.messages.send(room.id, "alice", "", AttachmentDraft(kind=AUDIO, data=b""))
    assert excinfo.value.detail == "attachment_empty"
    assert await core.messages.list_messages(room.id) == []


@pytest.mark.asyncio
async def test_send_text_writes_one_record(core, room):
    message_id = await core.messages.send(room.id, "alice", "hola a todos", author_name="Alice")
    message = await core.messages.get_message(room.id, message_id)
    assert message.text == "hola a todos"
    assert message.author_id == "alice"
    assert message.author_name == "Alice"
    assert message.attachment is None
    assert message.correction is None
    assert message.created_at is not None
    assert message.display_time.endswith("GMT")


@pytest.mark.asyncio
async def test_send_to_unknown_room_raises_without_writing(core, documents):
    with pytest.raises(RoomNotFound):
        await core.messages.send("no-such-room", "alice", "hi")
    assert await documents.list("rooms/no-such-room/messages") == []
    assert await core.rooms.list_recent_rooms("alice") == []


@pytest.mark.asyncio
async def test_pending_attachment_resolves_without_touching_text(core, room, blobs, png_bytes):
    blobs.put_gate = asyncio.Event()
    message_id = await core.messages.send(room.id, "alice", "look", AttachmentDraft(kind=IMAGE, data=png_bytes()))

    pending = await core.messages.get_message(room.id, message_id)
    assert pending.attachment.state == PENDING
    assert pending.attachment.url is None
    view = core.messages.render(pending)
    assert view.attachment.uploading is True

    blobs.put_gate.set()
    await core.messages.wait_for_uploads()

    settled = await core.messages.get_message(room.id, message_id)
    assert settled.text == "look"
    assert settled.correction is None
    assert settled.attachment.state == RESOLVED
    assert settled.attachment.blob_key == pending.attachment.blob_key
    assert settled.attachment.url == f"https://blobs.test/images/{pending.attachment.blob_key}"


@pytest.mark.asyncio
async def test_edit_during_upload_survives_settlement(core, room, blobs):
    blobs.put_gate = asyncio.Event()
    message_id = await core.messages.send(room.id, "alice", "I has a voice note", AttachmentDraft(kind=AUDIO, data=b"v"))
    await core.messages.edit_commit(room.id, message_id, "I have a voice note")

    blobs.put_gate.set()
    await core.messages.wait_for_uploads()

    message = await core.messages.get_message(room.id, message_id)
    assert message.attachment.state == RESOLVED
    assert message.text == "I has a voice note"
    assert message.correction.corrected_text == "I have a voice note"


@pytest.mark.asyncio
async def test_failed_upload_marks_attachment_failed(core, room, blobs):
    blobs.fail_put = 10
    message_id = await core.messages.send(room.id, "alice", "", AttachmentDraft(kind=AUDIO, data=b"voice"))
    await core.messages.wait_for_uploads()

    message = await core.messages.get_message(room.id, message_id)
    assert message.attachment.state == FAILED
    assert message.attachment.url is None
    view = core.messages.render(message)
    assert view.attachment.failed is True
    assert view.attachment.uploading is False


@pytest.mark.asyncio
async def test_render_uses_local_settlement_when_write_back_fails(core, room, documents, monkeypatch):
    async def broken_update(path, fields):
        raise ConnectionError("store offline")

    monkeypatch.setattr(documents, "update", broken_update)
    message_id = await core.messages.send(room.id, "alice", "", AttachmentDraft(kind=AUDIO, data=b"voice"))
    await core.messages.wait_for_uploads()

    stored = await core.messages.get_message(room.id, message_id)
    assert stored.attachment.state == PENDING
    view = core.messages.render(stored)
    assert view.attachment.state == RESOLVED
    assert view.attachment.url is not None


@pytest.mark.asyncio
async def test_edit_commit_keeps_original_and_rejects_second_edit(core, room):
    message_id = await core.messages.send(room.id, "alice", "a b c")
    record = await core.messages.edit_commit(room.id, message_id, "a x c")
    assert record.original_text == "a b c"
    assert record.corrected_text == "a x c"

    with pytest.raises(AlreadyEdited):
        await core.messages.edit_commit(room.id, message_id, "a y c")

    message = await core.messages.get_message(room.id, message_id)
    assert message.text == "a b c"
    assert message.correction.corrected_text == "a x c"
    view = core.messages.render(message)
    assert view.edited is True
    assert view.corrected_text == "a x c"
    assert [(t.token, t.changed) for t in view.overlay] == [("a", False), ("b", True), ("c", False)]


@pytest.mark.asyncio
async def test_concurrent_edits_have_exactly_one_winner(core, room):
    message_id = await core.messages.send(room.id, "alice", "teh cat")
    results = await asyncio.gather(
        core.messages.edit_commit(room.id, message_id, "the cat"),
        core.messages.edit_commit(room.id, message_id, "a cat"),
        return_exceptions=True,
    )
    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, AlreadyEdited)]
    assert len(winners) == 1
    assert len(losers) == 1
    message = await core.messages.get_message(room.id, message_id)
    assert message.correction.corrected_text == winners[0].corrected_text


@pytest.mark.asyncio
async def test_edit_validation_and_missing_message(core, room):
    message_id = await core.messages.send(room.id, "alice", "hi")
    with pytest.raises(ValidationError):
        await core.messages.edit_commit(room.id, message_id, "  ")
    with pytest.raises(MessageNotFound):
        await core.messages.edit_commit(room.id, "missing", "hello")


@pytest.mark.asyncio
async def test_delete_message_removes_blob_then_record(core, room, blobs, documents):
    message_id = await core.messages.send(room.id, "alice", "", AttachmentDraft(kind=AUDIO, data=b"voice"))
    await core.messages.wait_for_uploads()
    message = await core.messages.get_message(room.id, message_id)

    await core.messages.delete_message(room.id, message_id)

    assert blobs.deleted == [f"audio/{message.attachment.blob_key}"]
    assert f"audio/{message.attachment.blob_key}" not in blobs.blobs
    assert message_path(room.id, message_id) in documents.deleted
    with pytest.raises(MessageNotFound):
        await core.messages.get_message(room.id, message_id)


@pytest.mark.asyncio
async def test_delete_message_survives_blob_failure(core, room, blobs):
    message_id = await core.messages.send(room.id, "alice", "", AttachmentDraft(kind=AUDIO, data=b"voice"))
    await core.messages.wait_for_uploads()
    blobs.fail_delete = lambda key: True

    await core.messages.delete_message(room.id, message_id)

    assert await core.messages.list_messages(room.id) == []


@pytest.mark.asyncio
async def test_delete_missing_message_is_noop(core, room, documents):
    await core.messages.delete_message(room.id, "missing")
    assert documents.deleted == []


@pytest.mark.asyncio
async def test_delete_during_upload_cleans_up_late_blob(core, room, blobs):
    blobs.put_gate = asyncio.Event()
    message_id = await core.messages.send(room.id, "alice", "", AttachmentDraft(kind=AUDIO, data=b"voice"))
    pending = await core.messages.get_message(room.id, message_id)

    await core.messages.delete_message(room.id, message_id)
    blobs.put_gate.set()
    await core.messages.wait_for_uploads()

    key = pending.attachment.blob_path
    assert key not in blobs.blobs
    assert blobs.deleted.count(key) == 2
    assert await core.messages.list_messages(room.id) == []


@pytest.mark.asyncio
async def test_send_upserts_recent_room_for_author(core, room):
    await core.messages.send(room.id, "alice", "first")
    await core.messages.send(room.id, "alice", "second")

    recent = await core.rooms.list_recent_rooms("alice")
    assert [r.room_id for r in recent] == [room.id]
    assert recent[0].name == "Study Group"
    assert recent[0].photo_ref == f"https://api.dicebear.com/9.x/{room.id}/svg"
    assert await core.rooms.list_recent_rooms("bob") == []


@pytest.mark.asyncio
async def test_concurrent_sends_by_different_authors(core, room):
    await asyncio.gather(
        core.messages.send(room.id, "alice", "from alice"),
        core.messages.send(room.id, "bob", "from bob"),
    )
    messages = await core.messages.list_messages(room.id)
    assert sorted(m.text for m in messages) == ["from alice", "from bob"]
    assert messages[0].created_at < messages[1].created_at
    assert [r.room_id for r in await core.rooms.list_recent_rooms("alice")] == [room.id]
    assert [r.room_id for r in await core.rooms.list_recent_rooms("bob")] == [room.id]


@pytest.mark.asyncio
async def test_direct_room_resolves_peer_profile(core, documents):
    await documents.set("users/bob", {"name": "Bob", "photo_ref": "https://img.test/bob.png"})
    room = await core.rooms.get_room("alicebob", "alice")
    assert room.is_direct is True
    assert room.display_name == "Bob"
    assert room.photo_ref == "https://img.test/bob.png"

    await core.messages.send("alicebob", "alice", "hey")
    recent = await core.rooms.list_recent_rooms("alice")
    assert recent[0].name == "Bob"


@pytest.mark.asyncio
async def test_translation_is_cached_per_message_and_language(core, translator):
    first = await core.messages.request_translation("m1", "hello")
    again = await core.messages.request_translation("m1", "hello")
    english = await core.messages.request_translation("m1", "hola", "en")

    assert first == again == "[es] hello"
    assert english == "[en] hola"
    assert translator.calls == [("hello", "es"), ("hola", "en")]
    assert core.messages.translation("m1") == "[es] hello"

    core.messages.clear_translation("m1", "es")
    assert core.messages.translation("m1") is None
    assert core.messages.translation("m1", "en") == "[en] hola"
    await core.messages.request_translation("m1", "hello")
    assert len(translator.calls) == 3


@pytest.mark.asyncio
async def test_translation_failure_yields_no_result(core, translator):
    translator.error = ExternalServiceFailure("translation_request_failed")
    assert await core.messages.request_translation("m1", "hello") is None
    assert core.messages.translation("m1") is None


@pytest.mark.asyncio
async def test_translation_rejects_unsupported_language(core, translator):
    with pytest.raises(ValidationError) as excinfo:
        await core.messages.request_translation("m1", "hello", "fr")
    assert excinfo.value.detail == "unsupported_language"
    assert translator.calls == []


@pytest.mark.asyncio
async def test_transcription_fetches_audio_and_caches(core, transcriber, audio_bytes):
    transcript = await core.messages.request_transcription("m1", "https://blobs.test/audio/k")
    assert transcript == "hello from the voice note"
    assert transcriber.calls == [
        {"audio": audio_bytes, "encoding": "WEBM_OPUS", "sample_rate": 48000, "language_code": "en-US"}
    ]
    await core.messages.request_transcription("m1", "https://blobs.test/audio/k")
    assert len(transcriber.calls) == 1

    core.messages.clear_transcription("m1")
    assert core.messages.transcript("m1") is None


@pytest.mark.asyncio
async def test_transcription_without_speech_is_not_cached(core, transcriber):
    transcriber.result = None
    assert await core.messages.request_transcription("m1", "https://blobs.test/audio/k") is None
    assert await core.messages.request_transcription("m1", "https://blobs.test/audio/k") is None
    assert len(transcriber.calls) == 2


@pytest.mark.asyncio
async def test_transcription_of_unreachable_audio_returns_none(core, transcriber):
    assert await core.messages.request_transcription("m1", "https://blobs.test/audio/missing") is None
    assert transcriber.calls == []


@pytest.mark.asyncio
async def test_render_includes_cached_side_channels(core, room):
    message_id = await core.messages.send(room.id, "alice", "hello")
    await core.messages.request_translation(message_id, "hello")
    message = await core.messages.get_message(room.id, message_id)

    view = core.messages.render(message)
    assert view.translation == "[es] hello"
    assert view.transcript is None
    assert view.edited is False
    assert view.overlay == []


@pytest.mark.asyncio
async def test_local_settlement_is_dropped_once_stored(core, room):
    message_ids = [
        await core.messages.send(room.id, "alice", "", AttachmentDraft(kind=AUDIO, data=b"voice"))
        for _ in range(3)
    ]
    await core.messages.wait_for_uploads()

    assert core.messages._settled == {}
    for message_id in message_ids:
        message = await core.messages.get_message(room.id, message_id)
        assert core.messages.render(message).attachment.state == RESOLVED


@pytest.mark.asyncio
async def test_unexpected_encoder_error_still_settles_failed(core, room, monkeypatch, png_bytes):
    def broken_encoder(raw, **kwargs):
        raise RuntimeError("encoder bug")

    monkeypatch.setattr(attachments_module, "compress_image", broken_encoder)
    message_id = await core.messages.send(room.id, "alice", "", AttachmentDraft(kind=IMAGE, data=png_bytes()))
    await core.messages.wait_for_uploads()

    message = await core.messages.get_message(room.id, message_id)
    assert message.attachment.state == FAILED
