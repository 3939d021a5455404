import pytest

torch = pytest.importorskip("torch", reason="torch not installed")

from mambagen.engine.logits import LogitsProcessor, apply_repeat_penalty
from mambagen.engine.types import GenerationParams


def test_repeat_penalty_of_one_is_a_no_op():
    logits = torch.tensor([1.5, -2.0, 0.0, 3.0])
    assert apply_repeat_penalty(logits, 1.0, [0, 1, 2]) is logits


def test_repeat_penalty_never_flips_sign():
    logits = torch.tensor([2.0, -2.0, 0.0, 3.0])
    out = apply_repeat_penalty(logits, 2.0, [0, 1, 2, 0])

    assert out.tolist() == [1.0, -4.0, 0.0, 3.0]
    # Input is untouched.
    assert logits.tolist() == [2.0, -2.0, 0.0, 3.0]


def test_repeat_penalty_ignores_out_of_vocab_ids():
    logits = torch.tensor([1.0, 1.0])
    out = apply_repeat_penalty(logits, 2.0, [5, -1])
    assert out.tolist() == [1.0, 1.0]


def test_greedy_sampling_picks_argmax():
    proc = LogitsProcessor(temperature=None, repeat_penalty=1.0)
    assert proc.is_greedy
    assert proc.sample(torch.tensor([0.1, 4.0, 2.0])) == 1


def test_tiny_temperature_is_greedy():
    proc = LogitsProcessor(temperature=1e-9)
    assert proc.is_greedy


def test_same_seed_same_draws():
    logits = torch.randn(50, generator=torch.Generator().manual_seed(0))
    a = LogitsProcessor(seed=7, temperature=1.0)
    b = LogitsProcessor(seed=7, temperature=1.0)
    assert [a.sample(logits) for _ in range(20)] == [b.sample(logits) for _ in range(20)]


def test_reset_replays_the_random_stream():
    logits = torch.zeros(30)
    proc = LogitsProcessor(seed=11, temperature=1.0)
    first = [proc.sample(logits) for _ in range(10)]
    proc.reset()
    assert [proc.sample(logits) for _ in range(10)] == first


def test_rng_state_round_trip():
    logits = torch.zeros(30)
    proc = LogitsProcessor(seed=3, temperature=0.8)
    proc.sample(logits)
    saved = proc.get_rng_state()
    expected = [proc.sample(logits) for _ in range(5)]
    proc.set_rng_state(saved)
    assert [proc.sample(logits) for _ in range(5)] == expected


def test_top_p_restricts_to_nucleus():
    # Softmax mass: token 0 dominates, token 1 second.
    logits = torch.tensor([5.0, 4.0, -5.0, -5.0, -5.0])
    proc = LogitsProcessor(seed=0, temperature=1.0, top_p=0.5)
    draws = {proc.sample(logits) for _ in range(50)}
    assert draws == {0}

    proc = LogitsProcessor(seed=0, temperature=1.0, top_p=0.9)
    draws = {proc.sample(logits) for _ in range(200)}
    assert draws <= {0, 1}


def test_nan_logits_fall_back_to_argmax():
    proc = LogitsProcessor(temperature=0.7)
    logits = torch.tensor([float("nan"), float("nan"), float("nan")])
    assert proc.sample(logits) == 0


def test_forced_position_returns_prompt_token_without_mutation():
    proc = LogitsProcessor(temperature=None, repeat_penalty=1.0)
    tokens = [5, 9, 2]
    logits = torch.zeros(40)
    logits[33] = 10.0

    assert proc.add_logits(0, tokens, logits) == 9
    assert proc.add_logits(1, tokens, logits) == 2
    assert tokens == [5, 9, 2]


def test_last_position_samples_and_appends():
    proc = LogitsProcessor(temperature=None, repeat_penalty=1.0)
    tokens = [5, 9, 2]
    logits = torch.zeros(40)
    logits[33] = 10.0

    assert proc.add_logits(2, tokens, logits) == 33
    assert tokens == [5, 9, 2, 33]


def test_add_logits_rejects_positions_outside_history():
    proc = LogitsProcessor()
    with pytest.raises(IndexError):
        proc.add_logits(3, [1, 2, 3], torch.zeros(5))


def test_forced_positions_consume_randomness_only_when_enabled():
    logits = torch.zeros(30)

    def _draw_after_forcing(sample_forced: bool) -> int:
        proc = LogitsProcessor(seed=5, temperature=1.0, sample_forced_positions=sample_forced)
        tokens = [1, 2, 3, 4]
        for i in range(3):
            proc.add_logits(i, tokens, logits)
        return proc.add_logits(3, tokens, logits)

    plain = LogitsProcessor(seed=5, temperature=1.0)
    first_draw = plain.sample(logits)
    fourth_draw = [first_draw] + [plain.sample(logits) for _ in range(3)]

    assert _draw_after_forcing(False) == first_draw
    assert _draw_after_forcing(True) == fourth_draw[3]


def test_penalty_window_covers_recent_tokens_only():
    proc = LogitsProcessor(temperature=None, repeat_penalty=100.0, repeat_last_n=1)
    logits = torch.tensor([5.0, 4.0, 0.0, 0.0])
    # Window for i=2 is tokens[1:3] == [3, 2]; token 0 is outside it.
    tokens = [0, 3, 2]
    assert proc.add_logits(2, tokens, logits) == 0

    proc = LogitsProcessor(temperature=None, repeat_penalty=100.0, repeat_last_n=2)
    tokens = [0, 3, 2]
    assert proc.add_logits(2, tokens, logits) == 1


def test_from_params_copies_fields():
    params = GenerationParams(seed=1, temperature=0.5, top_p=0.8, repeat_penalty=1.3, repeat_last_n=4)
    proc = LogitsProcessor.from_params(params)
    assert (proc.seed, proc.temperature, proc.top_p) == (1, 0.5, 0.8)
    assert (proc.repeat_penalty, proc.repeat_last_n) == (1.3, 4)
    assert proc.sample_forced_positions is True
