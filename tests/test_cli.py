from __future__ import annotations

"""The ``ranklda`` command line, end to end on a small synthetic corpus."""

import numpy as np
import jax
import pytest

from ranklda_jax.cli import main
from ranklda_jax.utils.generator import generate_ranklda_corpus
from ranklda_jax.utils.io import read_model, write_corpus


def _write_data(tmp_path):
    synth = generate_ranklda_corpus(
        jax.random.PRNGKey(0), num_docs=12, num_topics=2, vocab_size=8, doc_length=6, num_comparisons=10
    )
    path = tmp_path / "train.txt"
    write_corpus(synth.corpus, path)
    return path, synth


def test_fit_infer_eval(tmp_path, capsys):
    data, synth = _write_data(tmp_path)
    model_path = tmp_path / "model.txt"
    lda_path = tmp_path / "lda.txt"

    code = main([
        "-q", "fit", "--data", str(data), "--model", str(model_path), "--lda-output", str(lda_path),
        "-k", "2", "-a", "0.1", "-i", "2", "--model-dir", str(tmp_path / "snaps"),
    ])
    assert code == 0
    model = read_model(model_path)
    assert (model.num_topics, model.num_docs) == (2, 12)
    assert (tmp_path / "snaps" / "01-model.txt").exists()

    out = tmp_path / "inferred.txt"
    code = main([
        "-q", "infer", str(model_path), str(data), str(out), "--model-data", str(data), "--sa-iters", "5",
    ])
    assert code == 0
    lines = out.read_text().splitlines()
    assert lines[0] == "12"
    assert len(lines[13].split()) == 12
    assert np.isfinite(float(lines[14]))

    docs = tmp_path / "heldout.txt"
    docs.write_text("0 1 2\n3 3 7 99\n")
    capsys.readouterr()
    code = main([
        "-q", "eval", "--phi", str(lda_path), "--data", str(docs), "--samples", "5", "--burn-in", "5", "--bits",
    ])
    assert code == 0
    assert np.isfinite(float(capsys.readouterr().out.strip()))


def test_missing_input_exits_with_error(tmp_path):
    code = main(["-q", "fit", "--data", str(tmp_path / "missing.txt"), "--model", str(tmp_path / "m.txt")])
    assert code == 1


def test_malformed_input_exits_with_error(tmp_path):
    data = tmp_path / "bad.txt"
    data.write_text("1 0\nnot-a-pair\n")
    code = main(["-q", "fit", "--data", str(data), "--model", str(tmp_path / "m.txt")])
    assert code == 1


def test_eval_help_describes_transitions(capsys):
    with pytest.raises(SystemExit):
        main(["eval", "--help"])
    out = capsys.readouterr().out
    assert "--transition" in out
    assert "chibeval's" in out
