import numpy as np

from codec import float_to_pcm16, float_to_pcm16_bytes, pcm16_to_float


def test_encode_scales_asymmetrically_and_truncates():
    pcm = float_to_pcm16([1.0, -1.0, 0.0, 0.5, -0.5])
    assert pcm.dtype == np.int16
    assert pcm.tolist() == [32767, -32768, 0, 16383, -16384]


def test_encode_clamps_out_of_range_samples():
    assert float_to_pcm16([2.5, -7.0]).tolist() == [32767, -32768]


def test_round_trip_within_one_quantisation_step():
    samples = np.linspace(-1.0, 1.0, 201, dtype=np.float32)
    decoded = pcm16_to_float(float_to_pcm16_bytes(samples))
    assert decoded.dtype == np.float32
    assert np.max(np.abs(decoded - samples)) <= 2 / 32768 + 1e-6


def test_decode_is_little_endian_and_ignores_trailing_odd_byte():
    decoded = pcm16_to_float(b"\x00\x80\xff\x7f\x01")
    assert decoded.tolist() == [-1.0, 32767 / 32768]


def test_decode_accepts_int16_arrays_and_empty_input():
    assert pcm16_to_float(np.array([16384], dtype=np.int16)).tolist() == [0.5]
    assert pcm16_to_float(b"").size == 0
