import pytest

from rchatd.codec import decode, encode
from rchatd.constants import B_CONTENT, K_BODY, T_SEND
from rchatd.envelope import make_envelope, validate_envelope


def test_codec_round_trip() -> None:
    env = make_envelope(T_SEND, src=b"peer", body={B_CONTENT: "hello"})
    data = encode(env)
    decoded = decode(data)
    assert decoded == env
    assert decoded[K_BODY][B_CONTENT] == "hello"
    validate_envelope(decoded)


def test_decode_rejects_non_bytes() -> None:
    with pytest.raises(TypeError):
        decode("not bytes")  # type: ignore[arg-type]
