import numpy as np
import pytest

from poolchain.buildmat import build_cascade_matrix, build_forcing


def test_cascade_matrix_is_lower_bidiagonal():
    M = build_cascade_matrix([0.5, 0.1, 0.01], [0.2, 0.8])
    expected = np.array([
        [-0.5, 0.0, 0.0],
        [0.1, -0.1, 0.0],
        [0.0, 0.08, -0.01],
    ])
    np.testing.assert_allclose(M, expected)
    assert M.flags["C_CONTIGUOUS"]


def test_extra_transfer_fraction_is_ignored():
    np.testing.assert_array_equal(build_cascade_matrix([0.5, 0.1], [0.3, 0.9]),
                                  build_cascade_matrix([0.5, 0.1], [0.3]))


def test_missing_transfer_fraction_raises():
    with pytest.raises(ValueError):
        build_cascade_matrix([0.5, 0.1, 0.2], [0.3])


def test_forcing_broadcasts_shared_duration():
    mags, durs = build_forcing([1.0, 0.0, 2.5], 40.0)
    np.testing.assert_array_equal(mags, [1.0, 0.0, 2.5])
    np.testing.assert_array_equal(durs, [40.0, 40.0, 40.0])
    assert durs.flags["C_CONTIGUOUS"]
