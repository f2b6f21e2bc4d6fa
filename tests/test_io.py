from __future__ import annotations

"""File formats: round trips and malformed input."""

import numpy as np
import jax
import pytest

from ranklda_jax.models.ranklda import InitSettings, random_model
from ranklda_jax.utils.errors import MalformedInputError
from ranklda_jax.utils.io import (
    read_assignments,
    read_corpus,
    read_documents,
    read_model,
    read_phi,
    write_corpus,
    write_inference,
    write_lda,
    write_model,
)
from ranklda_jax.utils.process import corpus_from_documents


def _corpus():
    return corpus_from_documents([[0, 3, 3, 1], [2], [], [4, 4, 0]], [(0, 1), (3, 0), (2, 1)])


def test_corpus_round_trip(tmp_path):
    corpus = _corpus()
    path = tmp_path / "corpus.txt"
    write_corpus(corpus, path)
    again = read_corpus(path)

    assert (again.num_docs, again.num_comparisons, again.vocab_size) == (4, 3, 5)
    assert [sorted(d.tolist()) for d in again.documents()] == [sorted(d.tolist()) for d in corpus.documents()]
    np.testing.assert_array_equal(again.comparisons, corpus.comparisons)


def test_read_corpus_text(tmp_path):
    path = tmp_path / "corpus.txt"
    path.write_text("2 1\n0:2 5:1\n3:1\n1 0\n")
    corpus = read_corpus(path)

    assert corpus.vocab_size == 6
    assert [d.tolist() for d in corpus.documents()] == [[0, 0, 5], [3]]
    np.testing.assert_array_equal(corpus.comparisons, [[1, 0]])


@pytest.mark.parametrize(
    "text, line",
    [
        ("2 0\n0:1\nfoo\n", 3),
        ("1 1\n0:1\n0\n", 3),
        ("1 0\n0:x\n", 2),
        ("x 0\n", 1),
    ],
)
def test_malformed_corpus(tmp_path, text, line):
    path = tmp_path / "bad.txt"
    path.write_text(text)
    with pytest.raises(MalformedInputError, match=f":{line}:"):
        read_corpus(path)


def test_truncated_corpus(tmp_path):
    path = tmp_path / "short.txt"
    path.write_text("3 0\n0:1\n")
    with pytest.raises(MalformedInputError, match="end of file"):
        read_corpus(path)


def test_missing_file(tmp_path):
    with pytest.raises(OSError):
        read_corpus(tmp_path / "nope.txt")


def test_model_round_trip(tmp_path):
    corpus = _corpus()
    model = random_model(corpus, InitSettings(num_topics=3, alpha=0.3, beta=0.25), key=jax.random.PRNGKey(4))
    model = model.replace(log_phi=model.log_phi + jax.random.normal(jax.random.PRNGKey(5), model.log_phi.shape) / 7)
    path = tmp_path / "model.txt"
    write_model(model, path)
    again = read_model(path)

    assert (again.num_topics, again.vocab_size, again.num_docs) == (3, 5, 4)
    assert again.alpha == model.alpha
    np.testing.assert_array_equal(again.beta, model.beta)
    np.testing.assert_array_equal(again.log_phi, model.log_phi)
    np.testing.assert_array_equal(again.nu, model.nu)
    np.testing.assert_array_equal(again.z, model.z)
    np.testing.assert_array_equal(again.doc_ptrs, model.doc_ptrs)


def test_model_bad_label(tmp_path):
    path = tmp_path / "model.txt"
    path.write_text("2 2\n0.1 0.1\n1e-6\n-0.7 -0.7\n-0.7 -0.7\n0.5 -0.5\n1\n0 2\n")
    with pytest.raises(MalformedInputError, match=":8:"):
        read_model(path)


def test_lda_export(tmp_path):
    corpus = _corpus()
    model = random_model(corpus, InitSettings(num_topics=2), key=jax.random.PRNGKey(0))
    path = tmp_path / "lda.txt"
    write_lda(model, path)

    phi = read_phi(path)
    assert phi.shape == (2, 5)
    np.testing.assert_allclose(phi.sum(axis=1), 1.0)


def test_read_log_phi(tmp_path):
    path = tmp_path / "phi.txt"
    path.write_text("0 0 0\n\n1 0 0\n")
    phi = read_phi(path, is_log=True)

    np.testing.assert_allclose(phi[0], [1 / 3, 1 / 3, 1 / 3])
    np.testing.assert_allclose(phi.sum(axis=1), 1.0)


def test_read_documents_filters_vocab(tmp_path):
    path = tmp_path / "docs.txt"
    path.write_text("0 1 7\n2\n\n9\n")
    docs = read_documents(path, 5)
    assert [d.tolist() for d in docs] == [[0, 1], [2], [], []]


def test_read_assignments(tmp_path):
    path = tmp_path / "seed.txt"
    path.write_text("2 0:1 3:0\n0\n")
    assert read_assignments(path, 2) == [{0: 1, 3: 0}, {}]

    path.write_text("2 0:1\n")
    with pytest.raises(MalformedInputError):
        read_assignments(path, 1)


def test_write_inference(tmp_path):
    path = tmp_path / "out.txt"
    write_inference(path, [np.array([0, 1]), np.array([], dtype=np.int32)], [0.5, 0.0], -1.25)
    lines = path.read_text().splitlines()

    assert lines[0] == "2"
    assert lines[1] == "0 1"
    assert lines[2] == ""
    assert [float(v) for v in lines[3].split()] == [0.5, 0.0]
    assert float(lines[4]) == -1.25
