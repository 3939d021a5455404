import pytest

pytest.importorskip("torch", reason="torch not installed")

from mambagen.engine.tokenizer import HFTokenizer, TokenOutputStream, Tokenizer


class _FakeTokenizer:
    # Pieces chosen so some tokens only become displayable with their successor.
    _PIECES = {
        0: "",
        1: "Hello",
        2: ",",
        3: " world",
        4: " caf",
        5: "é",
        6: "!",
        7: " ok",
    }

    def encode(self, text: str) -> list[int]:
        out = []
        rest = text
        while rest:
            for tid, piece in sorted(self._PIECES.items(), key=lambda kv: -len(kv[1])):
                if piece and rest.startswith(piece):
                    out.append(tid)
                    rest = rest[len(piece):]
                    break
            else:
                raise ValueError(rest)
        return out

    def decode(self, ids) -> str:
        return "".join(self._PIECES[int(i)] for i in ids)

    def token_to_id(self, token: str):
        return 0 if token == "<|endoftext|>" else None


def test_fake_satisfies_protocol():
    assert isinstance(_FakeTokenizer(), Tokenizer)


def test_alphanumeric_tokens_are_emitted_immediately():
    stream = TokenOutputStream(_FakeTokenizer())
    assert stream.next_token(1) == "Hello"
    assert stream.next_token(3) == " world"
    assert stream.decode_rest() is None


def test_punctuation_is_held_until_followed_by_text():
    stream = TokenOutputStream(_FakeTokenizer())
    assert stream.next_token(1) == "Hello"
    assert stream.next_token(2) is None
    assert stream.next_token(3) == ", world"


def test_decode_rest_flushes_held_text():
    stream = TokenOutputStream(_FakeTokenizer())
    stream.next_token(3)
    assert stream.next_token(6) is None
    assert stream.decode_rest() == "!"


def test_non_ascii_alphanumerics_count_as_displayable():
    stream = TokenOutputStream(_FakeTokenizer())
    assert stream.next_token(4) == " caf"
    assert stream.next_token(5) == "é"


def test_emitted_text_concatenates_to_full_decode():
    tok = _FakeTokenizer()
    ids = tok.encode("Hello, world! ok!")
    stream = TokenOutputStream(tok)
    pieces = [stream.next_token(t) for t in ids]
    rest = stream.decode_rest()
    assert "".join(p for p in pieces if p) + (rest or "") == "Hello, world! ok!"
    assert stream.decode_all() == "Hello, world! ok!"


def test_clear_forgets_history():
    stream = TokenOutputStream(_FakeTokenizer())
    stream.next_token(1)
    stream.next_token(2)
    stream.clear()
    assert stream.tokens == []
    assert stream.decode_rest() is None


def test_state_round_trip_resumes_mid_stream():
    stream = TokenOutputStream(_FakeTokenizer())
    stream.next_token(1)
    stream.next_token(2)
    saved = stream.get_state()

    other = TokenOutputStream(_FakeTokenizer())
    other.set_state(saved)
    assert other.next_token(3) == ", world"


def test_set_state_rejects_inconsistent_indices():
    stream = TokenOutputStream(_FakeTokenizer())
    with pytest.raises(ValueError):
        stream.set_state({"tokens": [1], "prev_index": 2, "current_index": 1})


def test_special_token_lookup():
    stream = TokenOutputStream(_FakeTokenizer())
    assert stream.special_token_id("<|endoftext|>") == 0
    assert stream.special_token_id("</s>") is None


class _FakeHF:
    def __init__(self) -> None:
        self.calls = []

    def encode(self, text, add_special_tokens=True):
        self.calls.append(("encode", text, add_special_tokens))
        return [1, 2]

    def decode(self, ids, skip_special_tokens=True):
        self.calls.append(("decode", tuple(ids), skip_special_tokens))
        return "ab"

    def get_vocab(self):
        return {"<|endoftext|>": 0, "a": 1}


def test_hf_tokenizer_wrapper_delegates():
    hf = _FakeHF()
    tok = HFTokenizer(hf)
    assert tok.encode("x") == [1, 2]
    assert tok.decode([1, 2]) == "ab"
    assert tok.token_to_id("<|endoftext|>") == 0
    assert tok.token_to_id("zzz") is None
    assert tok.hf_tokenizer is hf
    assert isinstance(tok, Tokenizer)
