"""Model tests — SGD step per loss, negatives, prediction.

Usage:
    python3 -m pytest test_fastvec_model.py -v
"""

import numpy as np
import pytest

from fastvec import Args, Matrix, Model

DIM = 8
COUNTS = [10, 8, 5, 3, 2]
BAG = [1, 2, 3]


def _model(loss, out_rows=len(COUNTS), counts=COUNTS, model="sg",
           wo_seed=None):
    args = Args.for_model(model, dim=DIM, loss=loss, neg=3, verbose=0)
    wi = Matrix.uniform(20, DIM, 1.0 / DIM, seed=1)
    if wo_seed is None:
        wo = Matrix.zeros(out_rows, DIM)
    else:
        wo = Matrix.uniform(out_rows, DIM, 0.5, seed=wo_seed)
    return Model(wi, wo, args, counts[:out_rows])


class TestUpdate:

    @pytest.mark.parametrize("loss", ["hs", "ns", "softmax"])
    def test_loss_decreases(self, loss):
        m = _model(loss)
        losses = [m.update(BAG, 2, 0.1) for _ in range(60)]
        assert losses[0] > 0
        assert np.mean(losses[-5:]) < losses[0]

    @pytest.mark.parametrize("loss", ["hs", "ns", "softmax"])
    def test_target_becomes_most_probable(self, loss):
        m = _model(loss)
        for _ in range(200):
            m.update(BAG, 3, 0.2)
        assert m.predict(BAG, k=1)[0][0] == 3

    def test_supervised_scales_input_gradient(self):
        a = _model("softmax", wo_seed=4)
        b = _model("softmax", model="sup", wo_seed=4)
        a.update(BAG, 0, 0.5)
        b.update(BAG, 0, 0.5)
        start = Matrix.uniform(20, DIM, 1.0 / DIM, seed=1).data
        da = a.wi.data[BAG] - start[BAG]
        db = b.wi.data[BAG] - start[BAG]
        assert np.abs(da).max() > 0
        assert np.allclose(db * len(BAG), da, atol=1e-6)

    def test_empty_bag_is_skipped(self):
        m = _model("ns")
        wi, wo = m.wi.data.copy(), m.wo.data.copy()
        assert m.update([], 0, 0.1) == 0.0
        assert np.array_equal(m.wi.data, wi)
        assert np.array_equal(m.wo.data, wo)

    def test_out_of_range(self):
        m = _model("softmax")
        with pytest.raises(IndexError):
            m.update(BAG, len(COUNTS), 0.1)
        with pytest.raises(IndexError):
            m.update([0, 20], 0, 0.1)
        with pytest.raises(IndexError):
            m.update([-1], 0, 0.1)


class TestNegatives:

    def test_never_the_target(self):
        m = _model("ns")
        for target in range(len(COUNTS)):
            draws = [m.get_negative(target) for _ in range(500)]
            assert target not in draws
            assert all(0 <= d < len(COUNTS) for d in draws)

    def test_follows_sqrt_counts(self):
        m = _model("ns")
        table = m.negatives
        freq = np.bincount(table, minlength=len(COUNTS)) / len(table)
        expected = np.sqrt(COUNTS) / np.sqrt(COUNTS).sum()
        assert np.allclose(freq, expected, atol=1e-3)

    def test_single_target_rejected(self):
        m = _model("ns", out_rows=1)
        with pytest.raises(ValueError, match="at least 2"):
            m.negatives


class TestPredict:

    def test_softmax_ties_by_lower_id(self):
        m = _model("softmax")
        preds = m.predict(BAG, k=3)
        assert [t for t, _ in preds] == [0, 1, 2]
        assert all(p == pytest.approx(0.2) for _, p in preds)

    def test_threshold(self):
        m = _model("softmax")
        assert m.predict(BAG, k=3, threshold=0.5) == []

    def test_hs_probabilities_sum_to_one(self):
        m = _model("hs", wo_seed=2)
        preds = m.predict(BAG, k=len(COUNTS))
        assert sorted(t for t, _ in preds) == list(range(len(COUNTS)))
        assert sum(p for _, p in preds) == pytest.approx(1.0, abs=1e-3)
        probs = [p for _, p in preds]
        assert probs == sorted(probs, reverse=True)

    def test_hs_top_k_prefix(self):
        m = _model("hs", wo_seed=2)
        full = m.predict(BAG, k=len(COUNTS))
        assert m.predict(BAG, k=2) == full[:2]

    def test_hs_saturated_path_stays_a_probability(self):
        m = _model("hs")
        m.wi.data[:] = 1.0
        m.wo.data[:] = 10.0
        (target, prob), = m.predict(BAG, k=1)
        assert len(m.tree.code(target)) >= 1
        assert prob == 1.0

    def test_empty_input(self):
        assert _model("softmax").predict([], k=2) == []
