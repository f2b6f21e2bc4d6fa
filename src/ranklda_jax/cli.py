"""Command line entry point: ``ranklda fit | infer | eval``."""

import argparse
import logging
import math
import sys
from typing import List, Optional

import jax
import jax.numpy as jnp

from ranklda_jax.inference.chib import ChibEstimator, ChibSettings
from ranklda_jax.inference.sampler import AnnealedSampler, InferSettings
from ranklda_jax.inference.trainer import OptSettings, RankLDATrainer
from ranklda_jax.models.lda import LDAModel
from ranklda_jax.models.ranklda import (
    InitSettings,
    assigned_model,
    random_assignment_perplexity,
    random_model,
)
from ranklda_jax.utils.errors import RankLDAError
from ranklda_jax.utils.io import (
    read_assignments,
    read_corpus,
    read_documents,
    read_model,
    read_phi,
    write_inference,
    write_lda,
    write_model,
)
from ranklda_jax.utils.process import restrict_vocab

logger = logging.getLogger(__name__)


def _fit(args) -> None:
    corpus = read_corpus(args.data)
    init = InitSettings(num_topics=args.topics, alpha=args.alpha, beta=args.beta, sigma2=args.sigma2)
    key_init, key_train = jax.random.split(jax.random.PRNGKey(args.seed))

    if args.assign:
        seeds = read_assignments(args.assign, corpus.num_docs)
        model = assigned_model(corpus, init, seeds, key=key_init)
    else:
        model = random_model(corpus, init, key=key_init)

    config = OptSettings(
        num_iters=args.iters,
        num_sa_iters=args.sa_iters,
        beta_opt=args.optimize_beta,
        burn_in=args.burn_in,
        init_temp=args.temp,
        local_cooling_rate=args.local_cooling,
        global_cooling_rate=args.global_cooling,
        drop_rate=args.drop_rate,
        show_progress=not args.quiet,
    )
    trainer = RankLDATrainer(corpus, model, config, key_train, model_dir=args.model_dir)
    model = trainer.run()

    write_model(model, args.model)
    if args.lda_output:
        write_lda(model, args.lda_output)
    logger.info("model written to %s", args.model)


def _infer(args) -> None:
    model = read_model(args.model)
    corpus = restrict_vocab(read_corpus(args.data), model.vocab_size)
    training = read_corpus(args.model_data, vocab_size=model.vocab_size) if args.model_data else None

    config = InferSettings(
        num_sa_iters=args.sa_iters,
        init_temp=args.temp,
        cooling_rate=args.cooling,
        show_progress=not args.quiet,
    )
    key_infer, key_ppl = jax.random.split(jax.random.PRNGKey(args.seed))
    sampler = AnnealedSampler(model, config, training_corpus=training)

    documents = corpus.documents()
    assignments = sampler.infer(documents, key=key_infer)
    scores = sampler.scores(assignments)
    ppl = random_assignment_perplexity(model, documents, key=key_ppl)

    write_inference(args.output, assignments, scores, ppl)
    logger.info("inference for %d documents written to %s", len(documents), args.output)


def _eval(args) -> None:
    lda = LDAModel(jnp.asarray(read_phi(args.phi, is_log=args.log)), args.alpha)
    if args.smoothing > 0:
        lda = lda.smoothed(args.smoothing)
    documents = read_documents(args.data, lda.vocab_size)

    config = ChibSettings(
        num_samples=args.samples,
        burn_in=args.burn_in,
        transition=args.transition,
        show_progress=not args.quiet,
    )
    result = ChibEstimator(lda, config).evaluate(documents, key=jax.random.PRNGKey(args.seed))
    total = result.total / math.log(2.0) if args.bits else result.total
    print(f"{total:.6f}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ranklda", description=__doc__)
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("-q", "--quiet", action="store_true", help="hide progress bars")
    sub = parser.add_subparsers(dest="command", required=True)

    fit = sub.add_parser("fit", help="train a RankLDA model")
    fit.add_argument("--data", required=True, help="corpus file with comparisons")
    fit.add_argument("--model", required=True, help="output model file")
    fit.add_argument("--model-dir", default=None, help="directory for per-iteration snapshots")
    fit.add_argument("--lda-output", default=None, help="also write exp(log_phi) here")
    fit.add_argument("--assign", default=None, help="seed assignment file (e.g. from LDA)")
    fit.add_argument("-k", "--topics", type=int, default=5, help="number of topics")
    fit.add_argument("-a", "--alpha", type=float, default=1e-6, help="topic-word pseudo-count")
    fit.add_argument("-b", "--beta", type=float, default=0.1, help="doc-topic concentration")
    fit.add_argument("-g", "--sigma2", type=float, default=1.0, help="prior variance of nu")
    fit.add_argument("-s", "--seed", type=int, default=1, help="random seed")
    fit.add_argument("-o", "--optimize-beta", action="store_true", help="fit beta by Newton-Raphson")
    fit.add_argument("-i", "--iters", type=int, default=15, help="outer iterations")
    fit.add_argument("--burn-in", type=int, default=0, help="sweeps without the ranking term")
    fit.add_argument("-t", "--temp", type=float, default=1.0, help="initial temperature")
    fit.add_argument("--sa-iters", type=int, default=50, help="annealing iterations")
    fit.add_argument("--global-cooling", type=float, default=1.0, help="cooling per outer iteration")
    fit.add_argument("--local-cooling", type=float, default=1.0, help="cooling inside a sweep")
    fit.add_argument("--drop-rate", type=float, default=0.0, help="probability of skipping a comparison term")
    fit.set_defaults(func=_fit)

    infer = sub.add_parser("infer", help="assign topics and scores to unseen documents")
    infer.add_argument("model", help="trained model file")
    infer.add_argument("data", help="corpus file of unseen documents")
    infer.add_argument("output", help="output file")
    infer.add_argument("--model-data", default=None, help="training corpus, enables collapsed counts")
    infer.add_argument("-s", "--seed", type=int, default=1, help="random seed")
    infer.add_argument("-t", "--temp", type=float, default=1.0, help="initial temperature")
    infer.add_argument("--sa-iters", type=int, default=1000, help="annealing sweeps per document")
    infer.add_argument("--cooling", type=float, default=1.0, help="cooling per sweep")
    infer.set_defaults(func=_infer)

    ev = sub.add_parser("eval", help="held-out log-likelihood with Chib's method")
    ev.add_argument("--phi", required=True, help="topic-word matrix, one topic per line")
    ev.add_argument("--data", required=True, help="held-out documents, one per line")
    ev.add_argument("--alpha", type=float, default=1.0, help="doc-topic concentration")
    ev.add_argument("--samples", type=int, default=100, help="chain states around the pivot")
    ev.add_argument("--burn-in", type=int, default=1000, help="sweeps before the reference state")
    ev.add_argument("--log", action="store_true", help="phi file holds log-probabilities")
    ev.add_argument("--smoothing", type=float, default=0.0, help="additive smoothing of phi")
    ev.add_argument(
        "--transition", choices=("forward", "reverse"), default="forward",
        help="kernel scored per sample; \"reverse\" replays z* onto each sample and matches chibeval's numbers",
    )
    ev.add_argument("--bits", action="store_true", help="report log2 instead of nats")
    ev.add_argument("-s", "--seed", type=int, default=1, help="random seed")
    ev.set_defaults(func=_eval)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s : %(levelname)s : %(message)s",
    )
    try:
        args.func(args)
    except (RankLDAError, ValueError, OSError) as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
