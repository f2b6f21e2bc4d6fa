"""RankLDA: topic models trained jointly with pairwise document preferences.

Subpackages
-----------
- ``ranklda_jax.models`` holds the model containers and the JAX kernels.
- ``ranklda_jax.inference`` drives training, inference on unseen documents
  and Chib-style held-out likelihood estimation.
- ``ranklda_jax.utils`` holds the corpus container, file formats and the
  synthetic data generator.

The package runs JAX in 64-bit mode.  Cached comparison margins are updated
incrementally and must match a full rebuild to machine precision.
"""

import jax

jax.config.update("jax_enable_x64", True)

__version__ = "0.1.0"
