import pytest

torch = pytest.importorskip("torch", reason="torch not installed")

from mambagen.errors import ShapeError
from mambagen.kernels.scan import (
    causal_conv1d,
    causal_conv1d_update,
    discretize,
    selective_scan,
    selective_scan_step,
    selective_scan_update,
)


def _scan_inputs(batch=2, seq_len=7, d_inner=6, d_state=4, seed=0):
    g = torch.Generator().manual_seed(seed)
    x = torch.randn(batch, seq_len, d_inner, generator=g)
    delta = torch.nn.functional.softplus(torch.randn(batch, seq_len, d_inner, generator=g))
    A = -torch.exp(torch.randn(d_inner, d_state, generator=g))
    B = torch.randn(batch, seq_len, d_state, generator=g)
    C = torch.randn(batch, seq_len, d_state, generator=g)
    D = torch.randn(d_inner, generator=g)
    return x, delta, A, B, C, D


def test_discretize_shapes_and_decay():
    x, delta, A, B, _, _ = _scan_inputs(batch=1, seq_len=1)
    deltaA, deltaB_x = discretize(delta[:, 0], A, B[:, 0], x[:, 0])
    assert deltaA.shape == (1, 6, 4)
    assert deltaB_x.shape == (1, 6, 4)
    # A < 0 and delta > 0, so every factor is a decay.
    assert bool(((deltaA >= 0) & (deltaA < 1)).all())


def test_sequence_scan_matches_stepwise_updates():
    x, delta, A, B, C, D = _scan_inputs()
    y_seq, h_seq = selective_scan(x, delta, A, B, C, D)

    h = torch.zeros(2, 6, 4)
    ys = []
    for t in range(x.shape[1]):
        ys.append(selective_scan_update(h, x[:, t], delta[:, t], A, B[:, t], C[:, t], D))

    assert torch.allclose(torch.stack(ys, dim=1), y_seq, atol=1e-6)
    assert torch.allclose(h, h_seq, atol=1e-6)


def test_scan_split_in_two_calls_matches_single_call():
    x, delta, A, B, C, D = _scan_inputs(seq_len=9)
    y_full, h_full = selective_scan(x, delta, A, B, C, D)

    y1, h1 = selective_scan(x[:, :4], delta[:, :4], A, B[:, :4], C[:, :4], D)
    y2, h2 = selective_scan(x[:, 4:], delta[:, 4:], A, B[:, 4:], C[:, 4:], D, initial_state=h1)

    assert torch.allclose(torch.cat([y1, y2], dim=1), y_full, atol=1e-6)
    assert torch.allclose(h2, h_full, atol=1e-6)


def test_scan_step_does_not_modify_input_state():
    x, delta, A, B, C, D = _scan_inputs(batch=1, seq_len=1)
    h = torch.randn(1, 6, 4)
    before = h.clone()
    selective_scan_step(h, x[:, 0], delta[:, 0], A, B[:, 0], C[:, 0], D)
    assert torch.equal(h, before)


def test_causal_conv_sequence_matches_rolling_updates():
    torch.manual_seed(0)
    batch, d_inner, seq_len, d_conv = 2, 5, 8, 4
    x = torch.randn(batch, d_inner, seq_len)
    weight = torch.randn(d_inner, 1, d_conv)
    bias = torch.randn(d_inner)

    out_seq, final_state = causal_conv1d(x, weight, bias)

    conv_state = torch.zeros(batch, d_inner, d_conv - 1)
    outs = [causal_conv1d_update(x[:, :, t], conv_state, weight, bias) for t in range(seq_len)]

    assert out_seq.shape == (batch, d_inner, seq_len)
    assert torch.allclose(torch.stack(outs, dim=-1), out_seq, atol=1e-5)
    assert torch.allclose(conv_state, final_state)


def test_causal_conv_output_ignores_future_inputs():
    torch.manual_seed(1)
    x = torch.randn(1, 3, 6)
    weight = torch.randn(3, 1, 4)
    out_a, _ = causal_conv1d(x, weight, None)

    x_b = x.clone()
    x_b[..., 4:] = 100.0
    out_b, _ = causal_conv1d(x_b, weight, None)

    assert torch.allclose(out_a[..., :4], out_b[..., :4])


def test_conv_state_holds_last_inputs_after_d_conv_steps():
    d_conv = 4
    weight = torch.randn(2, 1, d_conv)
    conv_state = torch.full((1, 2, d_conv - 1), 7.0)
    inputs = [torch.full((1, 2), float(t)) for t in range(d_conv)]
    for x_t in inputs:
        causal_conv1d_update(x_t, conv_state, weight, None)

    # The pre-existing window has been fully shifted out.
    expected = torch.tensor([[[1.0, 2.0, 3.0], [1.0, 2.0, 3.0]]])
    assert torch.equal(conv_state, expected)


def test_shape_checks_raise_when_enabled(monkeypatch):
    x, delta, A, B, C, D = _scan_inputs()
    bad_B = B[..., :3]

    monkeypatch.setenv("MAMBAGEN_ENABLE_ASSERTS", "1")
    with pytest.raises(ShapeError, match="B must have shape"):
        selective_scan(x, delta, A, bad_B, C, D)

    with pytest.raises(ShapeError, match="conv_state"):
        causal_conv1d_update(torch.randn(1, 5), torch.zeros(1, 5, 2), torch.randn(5, 1, 4), None)
