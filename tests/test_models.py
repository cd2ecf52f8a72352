import pytest

from betbot.models import (
    ChatMessage, Chatting, GatewaySettings, Idle, Market, Monitoring, Resolved, StreamBuffer,
)


def test_state_equality_compares_tag_and_payload():
    assert Idle() == Idle()
    assert Idle() != Chatting()
    assert Monitoring("q?", 10.0) == Monitoring("q?", 10.0)
    assert Monitoring("q?", 10.0) != Monitoring("q?", 11.0)
    assert Resolved(True) != Resolved(False)
    assert Resolved(False).to_dict() == {"state": "resolved", "outcome": False}
    assert Monitoring("q?", 10.0).to_dict() == {"state": "monitoring", "question": "q?", "deadline": 10.0}


def test_stream_buffer_take_resets():
    buf = StreamBuffer()
    buf.append("Hel")
    buf.append("lo")
    assert buf.in_progress
    assert buf.take() == "Hello"
    assert buf.text == "" and not buf.in_progress


@pytest.mark.parametrize("host,port,url", [
    ("192.168.1.100", 18789, "ws://192.168.1.100:18789"),
    ("gateway.local", 80, "ws://gateway.local:80"),
    ("", 18789, None),
    ("bad host", 18789, None),
    ("host/path", 18789, None),
    ("127.0.0.1", 0, None),
    ("127.0.0.1", 70000, None),
])
def test_ws_url(host, port, url):
    assert GatewaySettings(host=host, port=port, token="t").ws_url == url


def test_market_id_must_fit_uint64():
    Market(id=2**64 - 1, question="q?", deadline=0.0)
    with pytest.raises(ValueError):
        Market(id=-1, question="q?", deadline=0.0)
    with pytest.raises(ValueError):
        Market(id=2**64, question="q?", deadline=0.0)


def test_console_speaker_prints_and_remembers(capsys):
    from betbot.voice import ConsoleSpeaker

    speaker = ConsoleSpeaker()
    speaker.speak("Bet resolved: YES")
    assert speaker.last_utterance == "Bet resolved: YES"
    assert "Bet resolved: YES" in capsys.readouterr().out

    quiet = ConsoleSpeaker(echo=False)
    quiet.speak("shh")
    assert quiet.last_utterance == "shh"
    assert capsys.readouterr().out == ""


def test_chat_message_to_dict():
    message = ChatMessage(role="user", content="bet on rain")
    data = message.to_dict()
    assert data == {"role": "user", "content": "bet on rain", "timestamp": message.timestamp.isoformat()}
