"""Tests for timeline and participant models."""
from shared.models import ChatMessage, Participant, SubtitleTrack, TimelineState, clamp_rate

T = 1_700_000_000_000


def test_target_examples():
    state = TimelineState(is_playing=True, base_media_time=10.0, base_server_time=T, playback_rate=1.0)
    assert state.target(T) == 10.0
    assert state.target(T + 5000) == 15.0


def test_target_idempotent_and_increasing():
    state = TimelineState(is_playing=True, base_media_time=3.0, base_server_time=T, playback_rate=1.5)
    assert state.target(T + 1234) == state.target(T + 1234)
    previous = state.target(T)
    for step in range(1, 50):
        current = state.target(T + step * 37)
        assert current > previous
        previous = current


def test_target_frozen_while_paused():
    state = TimelineState(is_playing=False, base_media_time=42.0, base_server_time=T)
    assert state.target(T + 60_000) == 42.0


def test_rebase_leaves_no_residual_drift():
    state = TimelineState(is_playing=True, base_media_time=0.0, base_server_time=T, playback_rate=2.0)
    state.rebase(T + 900, 77.0)
    assert state.target(T + 900) == 77.0
    state.rebase(T + 1000, -5.0)
    assert state.base_media_time == 0.0


def test_timeline_dict_uses_wire_names():
    state = TimelineState(is_playing=True, base_media_time=1.5, base_server_time=T, playback_rate=1.25,
                          src="movie.mp4", subtitle_tracks=[SubtitleTrack(src="en.vtt", label="EN", lang="en")])
    data = state.to_dict()
    assert data["isPlaying"] is True
    assert data["baseServerTime"] == T
    assert data["subtitles"][0]["lang"] == "en"
    assert TimelineState.from_dict(data) == state


def test_timeline_from_dict_clamps_rate():
    assert TimelineState.from_dict({"playbackRate": 10}).playback_rate == 4.0
    assert clamp_rate(0.1) == 0.25


def test_participant_default_name():
    assert Participant(id="9f3c2a77").display_name == "user-9f3c"
    assert Participant(id="9f3c2a77", display_name="Ana").display_name == "Ana"


def test_participant_unknown_role_falls_back_to_follower():
    p = Participant.from_dict({"id": "x", "name": "X", "role": "admin"})
    assert not p.is_authoritative


def test_chat_message_dict():
    msg = ChatMessage(id="1", sender_id="a", sender_name="A", timestamp=T, text="hi")
    assert msg.to_dict()["senderName"] == "A"
    assert ChatMessage.from_dict(msg.to_dict()) == msg
