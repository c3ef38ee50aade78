"""fastvec end-to-end tests — training, determinism, save/load, quantization,
query engine.

Usage:
    python3 -m pytest test_fastvec.py -v
"""

import random
from pathlib import Path

import numpy as np
import pytest

from fastvec import (EOS, Args, Dictionary, FastText, Matrix, QMatrix,
                     iter_lines)

DIM = 10
EPOCH = 25
LR = 0.5

POS = ["good", "great", "excellent", "nice", "lovely", "superb"]
NEG = ["bad", "awful", "terrible", "poor", "nasty", "dreadful"]
FILLER = ["the", "a", "it", "was", "this", "movie"]


def _toy_lines(n=100, seed=0):
    rng = random.Random(seed)
    lines = []
    for i in range(n):
        label, pool = ("__label__pos", POS) if i % 2 == 0 else \
            ("__label__neg", NEG)
        words = [rng.choice(pool) for _ in range(3)] + \
            [rng.choice(FILLER) for _ in range(2)]
        rng.shuffle(words)
        lines.append([label] + words)
    return lines


def _write(path, lines):
    with open(path, "w", encoding="utf-8") as f:
        for tokens in lines:
            f.write(" ".join(tokens) + "\n")
    return str(path)


@pytest.fixture(scope="module")
def toy_path(tmp_path_factory):
    return _write(tmp_path_factory.mktemp("toy") / "train.txt", _toy_lines())


@pytest.fixture(scope="module")
def supervised(toy_path):
    return FastText.train(toy_path, model="sup", dim=DIM, epoch=EPOCH,
                          lr=LR, thread=1, verbose=0)


@pytest.fixture(scope="module")
def corpus_path(tmp_path_factory):
    rng = random.Random(1)
    vocab = [f"w{i}" for i in range(20)]
    lines = [[rng.choice(vocab) for _ in range(10)] for _ in range(100)]
    return _write(tmp_path_factory.mktemp("sg") / "corpus.txt", lines)


class TestSupervised:

    def test_converges(self, supervised, toy_path):
        n, p, r = supervised.test(toy_path, k=1)
        assert n == 100
        assert p >= 0.9
        assert r == pytest.approx(p)

    def test_deterministic(self, supervised, toy_path):
        again = FastText.train(toy_path, model="sup", dim=DIM, epoch=EPOCH,
                               lr=LR, thread=1, verbose=0)
        assert np.array_equal(again.input.data, supervised.input.data)
        assert np.array_equal(again.output.data, supervised.output.data)

    @pytest.mark.parametrize("loss", ["hs", "ns"])
    def test_other_losses(self, toy_path, loss):
        m = FastText.train(toy_path, model="sup", loss=loss, dim=DIM,
                           epoch=EPOCH, lr=LR, thread=1, verbose=0)
        _, p, _ = m.test(toy_path)
        assert p >= 0.9

    def test_multithreaded(self, toy_path):
        m = FastText.train(toy_path, model="sup", dim=DIM, epoch=EPOCH,
                           lr=LR, thread=4, verbose=0)
        _, p, _ = m.test(toy_path)
        assert p >= 0.8

    def test_predict(self, supervised):
        preds = supervised.predict("great superb lovely", k=2)
        assert [label for label, _ in preds][0] == "__label__pos"
        assert len(preds) == 2
        assert sum(p for _, p in preds) == pytest.approx(1.0, abs=1e-4)
        assert set(supervised.labels) == {"__label__pos", "__label__neg"}

    def test_predict_one_line_only(self, supervised):
        with pytest.raises(ValueError):
            supervised.predict("good\nbad")

    def test_iterable_input(self):
        m = FastText.train(_toy_lines(), model="sup", dim=DIM, epoch=EPOCH,
                           lr=LR, thread=1, verbose=0)
        _, p, _ = m.test(_toy_lines())
        assert p >= 0.9

    def test_path_and_tokens_agree(self, supervised, toy_path, tmp_path):
        path = tmp_path / "eval.txt"
        path.write_bytes(Path(toy_path).read_bytes() + b"\n\xff nice\n")
        assert supervised.test(str(path)) == \
            supervised.test(iter_lines(toy_path))

    def test_sentence_vector_is_hidden(self, supervised):
        vec = supervised.get_sentence_vector("good movie")
        ids, _ = supervised.dict.get_line("good movie\n")
        assert np.allclose(vec, supervised.input.data[ids].mean(axis=0))

    def test_no_labels(self, tmp_path):
        path = _write(tmp_path / "x.txt", [["just", "words"]])
        with pytest.raises(ValueError, match="no labels"):
            FastText.train(path, model="sup", verbose=0)

    def test_bad_config(self, toy_path):
        with pytest.raises(ValueError):
            FastText.train(toy_path, model="sup", loss="bogus", verbose=0)
        with pytest.raises(ValueError):
            FastText.train(toy_path, model="sup", dim=0, verbose=0)
        with pytest.raises(ValueError):
            FastText.train(toy_path, model="sup", unknown_option=1)


class TestUnsupervised:

    @pytest.mark.parametrize("model", ["sg", "cbow"])
    def test_trains(self, corpus_path, model):
        m = FastText.train(corpus_path, model=model, dim=DIM, min_count=1,
                           epoch=1, thread=1, bucket=1000, verbose=0)
        nw = m.dict.nwords
        assert nw == 21
        assert np.all(np.linalg.norm(m.input.data[:nw], axis=1) > 0)
        assert np.abs(m.output.data).sum() > 0

    @pytest.mark.parametrize("k", [1, 5, 30])
    def test_nn_excludes_query(self, corpus_path, k):
        m = FastText.train(corpus_path, model="sg", dim=DIM, min_count=1,
                           epoch=1, thread=1, bucket=1000, verbose=0)
        res = m.nn("w0", k=k)
        assert len(res) <= k
        assert len(res) == min(k, m.dict.nwords - 1)
        assert "w0" not in [w for _, w in res]
        scores = [s for s, _ in res]
        assert scores == sorted(scores, reverse=True)

    def test_hs_loss(self, corpus_path):
        m = FastText.train(corpus_path, model="cbow", loss="hs", dim=DIM,
                           min_count=1, epoch=1, thread=2, bucket=1000,
                           verbose=0)
        assert m.model.tree is not None
        assert m.output.rows == m.dict.nwords

    def test_oov_word_vector(self, corpus_path):
        m = FastText.train(corpus_path, model="sg", dim=DIM, min_count=1,
                           epoch=1, thread=1, bucket=1000, verbose=0)
        assert np.linalg.norm(m.get_word_vector("w0zz")) > 0
        assert len(m.ngram_vectors("w0")) == len(m.dict.subwords("w0"))

    def test_predict_needs_supervised(self, corpus_path):
        m = FastText.train(corpus_path, model="sg", dim=DIM, min_count=1,
                           epoch=1, thread=1, bucket=1000, verbose=0)
        with pytest.raises(ValueError):
            m.predict("w1 w2")
        with pytest.raises(ValueError):
            m.quantize()


class TestPersistence:

    def test_roundtrip(self, supervised, toy_path, tmp_path):
        path = str(tmp_path / "model.bin")
        supervised.save(path)
        loaded = FastText.load(path)
        assert loaded.dict.words == supervised.dict.words
        assert np.array_equal(loaded.input.data, supervised.input.data)
        for f in ("dim", "ws", "epoch", "model", "loss", "bucket", "minn",
                  "maxn", "word_ngrams", "t"):
            assert getattr(loaded.args, f) == getattr(supervised.args, f), f
        for tokens in iter_lines(toy_path):
            text = " ".join(t for t in tokens if not t.startswith("__label__"))
            assert loaded.predict(text, k=2) == supervised.predict(text, k=2)

    def test_header(self, supervised, tmp_path):
        path = tmp_path / "model.bin"
        supervised.save(str(path))
        head = np.frombuffer(path.read_bytes()[:8], dtype="<i4")
        assert head.tolist() == [793712314, 12]

    def test_wrong_magic(self, tmp_path):
        path = tmp_path / "junk.bin"
        path.write_bytes(b"\0" * 64)
        with pytest.raises(ValueError, match="wrong file format"):
            FastText.load(str(path))

    def test_truncated(self, supervised, tmp_path):
        path = tmp_path / "model.bin"
        supervised.save(str(path))
        data = path.read_bytes()
        path.write_bytes(data[:len(data) // 2])
        with pytest.raises(ValueError):
            FastText.load(str(path))

    def test_save_vectors(self, supervised, tmp_path):
        path = tmp_path / "model.vec"
        supervised.save_vectors(str(path))
        lines = path.read_text(encoding="utf-8").splitlines()
        assert lines[0] == f"{supervised.dict.nwords} {DIM}"
        assert len(lines) == supervised.dict.nwords + 1
        for line in lines[1:]:
            parts = line.split(" ")
            assert len(parts) == DIM + 1
            assert all(len(x.split(".")[1]) == 5 for x in parts[1:])

    def test_save_output(self, supervised, tmp_path):
        path = tmp_path / "model.output"
        supervised.save_output(str(path))
        lines = path.read_text(encoding="utf-8").splitlines()
        assert lines[0] == f"2 {DIM}"
        assert {l.split()[0] for l in lines[1:]} == set(supervised.labels)

    def test_pretrained_vectors(self, supervised, toy_path, tmp_path):
        vec_path = tmp_path / "pre.vec"
        supervised.save_vectors(str(vec_path))
        m = FastText.train(toy_path, str(vec_path), model="sup", dim=DIM,
                           epoch=1, lr=LR, thread=1, verbose=0)
        assert m.dict.get_id("superb") >= 0
        with pytest.raises(ValueError, match="Dimension"):
            FastText.train(toy_path, str(vec_path), model="sup", dim=DIM + 2,
                           verbose=0)


class TestQuantize:

    def _train(self, path):
        return FastText.train(path, model="sup", dim=DIM, epoch=EPOCH, lr=LR,
                              word_ngrams=2, bucket=2000, thread=1, verbose=0)

    def test_quantize_roundtrip(self, toy_path, tmp_path):
        m = self._train(toy_path)
        m.quantize(qnorm=True)
        assert isinstance(m.input, QMatrix)
        assert isinstance(m.output, Matrix)
        _, p, _ = m.test(toy_path)
        assert p >= 0.8

        path = str(tmp_path / "model.ftz")
        m.save(path)
        loaded = FastText.load(path)
        assert loaded.is_quantized()
        assert loaded.args.qnorm
        for tokens in _toy_lines(20, seed=5):
            text = " ".join(tokens[1:])
            assert loaded.predict(text, k=2) == m.predict(text, k=2)

        with pytest.raises(ValueError, match="already quantized"):
            m.quantize()

    def test_cutoff_retrain(self, toy_path, tmp_path):
        m = self._train(toy_path)
        m.quantize(cutoff=300, retrain=True, input=toy_path, epoch=5)
        assert m.dict.is_pruned()
        assert m.input.rows == 300
        assert m.dict.get_id(EOS) >= 0
        n, p, _ = m.test(toy_path)
        assert n > 0
        assert p >= 0.7

        path = str(tmp_path / "pruned.ftz")
        m.save(path)
        loaded = FastText.load(path)
        assert loaded.dict.pruneidx == m.dict.pruneidx
        text = "good great nice"
        assert loaded.predict(text) == m.predict(text)

    def test_retrain_needs_input(self, toy_path):
        m = self._train(toy_path)
        with pytest.raises(ValueError):
            m.quantize(cutoff=300, retrain=True)

    @pytest.mark.parametrize("options", [{"cutoff": 100}, {"dsub": 50}])
    def test_rejected_options_leave_model_intact(self, toy_path, tmp_path,
                                                 options):
        m = self._train(toy_path)
        rows, words = m.input.rows, list(m.dict.words)
        with pytest.raises(ValueError):
            m.quantize(**options)
        assert not m.is_quantized()
        assert not m.dict.is_pruned()
        assert m.input.rows == rows
        assert m.dict.words == words
        assert (m.args.dsub, m.args.cutoff) == (2, 0)

        path = str(tmp_path / "model.bin")
        m.save(path)
        loaded = FastText.load(path)
        assert loaded.predict("good great") == m.predict("good great")


class TestQueryEngine:

    @pytest.fixture
    def handmade(self):
        """Dimensions: royalty, male, female, fruit."""
        args = Args.for_model("sg", dim=4, min_count=1, minn=0, maxn=0,
                              verbose=0)
        vectors = {
            "king":  [1.0, 1.0, 0.0, 0.0],
            "man":   [0.0, 1.0, 0.0, 0.0],
            "woman": [0.0, 0.0, 1.0, 0.0],
            "queen": [1.0, 0.0, 1.0, 0.0],
            "apple": [0.0, 0.0, 0.0, 1.0],
            "pear":  [0.0, 0.1, 0.0, 1.0],
        }
        d = Dictionary(args)
        d.add(vectors)
        d.threshold(1, 0)
        d.init()
        input = Matrix(np.array([vectors[w] for w in d.words]))
        return FastText(args=args, dictionary=d, input=input,
                        output=Matrix.zeros(d.nwords, 4))

    def test_analogy(self, handmade):
        res = handmade.analogies("man", "king", "woman", k=3)
        assert res[0][1] == "queen"
        assert not {"man", "king", "woman"} & {w for _, w in res}

    def test_nn(self, handmade):
        res = handmade.nn("apple", k=2)
        assert res[0][1] == "pear"
        assert res[0][0] == pytest.approx(1.0 / np.sqrt(1.01))
        assert "apple" not in [w for _, w in res]

    def test_unsupervised_sentence_vector(self, handmade):
        vec = handmade.get_sentence_vector("man woman")
        assert np.allclose(vec, [0.0, 0.5, 0.5, 0.0])
