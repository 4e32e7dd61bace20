"""
Checkpointing functionality for the ABC optimizer.

Each retained iteration is stored as one pickle file,
``checkpoint_<iteration>.pkl``, written to a temporary file and renamed into
place so a reader never sees a half-written checkpoint. Files carry a magic
marker and a SHA-256 checksum of the pickled snapshot, so truncation and
corruption are detected on load and reported as ``CorruptCheckpoint``.
"""

import os
import re
import pickle
import logging
from hashlib import sha256

import numpy as np

from .config import ABCError
from .data_structures import OptimizationSnapshot


CHECKPOINT_MAGIC = "ABC-CHECKPOINT"
CHECKPOINT_FORMAT_VERSION = 1
_CHECKPOINT_RE = re.compile(r"^checkpoint_(\d+)\.pkl$")


class CorruptCheckpoint(ABCError):
    """A checkpoint file exists but cannot be trusted."""

    def __init__(self, path, reason):
        super().__init__(f"Corrupt checkpoint {path}: {reason}")
        self.path = path
        self.reason = reason


class CheckpointStore:
    """
    Persist and reload optimizer snapshots keyed by iteration number.

    Parameters
    ----------
    checkpoint_dir : str
        Directory holding the checkpoint files
    max_checkpoints : int
        Number of most recent checkpoints to keep
    population_size : int, optional
        Expected population size, checked on load
    dimensions : int, optional
        Expected dimension of every position, checked on load
    """

    def __init__(self, checkpoint_dir, max_checkpoints=10, population_size=None, dimensions=None):
        if max_checkpoints < 1:
            raise ValueError(f"max_checkpoints must be >= 1, got {max_checkpoints}")
        self.checkpoint_dir = checkpoint_dir
        self.max_checkpoints = max_checkpoints
        self.population_size = population_size
        self.dimensions = dimensions
        os.makedirs(self.checkpoint_dir, exist_ok=True)

    def path_for(self, iteration):
        return os.path.join(self.checkpoint_dir, f"checkpoint_{int(iteration):05d}.pkl")

    def list_iterations(self):
        """Return the iterations with a checkpoint file, ascending."""
        if not os.path.isdir(self.checkpoint_dir):
            return []
        iterations = []
        for name in os.listdir(self.checkpoint_dir):
            match = _CHECKPOINT_RE.match(name)
            if not match:
                continue
            iteration = int(match.group(1))
            # Skip names path_for() would not produce, e.g. checkpoint_7.pkl
            if os.path.basename(self.path_for(iteration)) == name:
                iterations.append(iteration)
        return sorted(iterations)

    def save(self, snapshot):
        """
        Save a snapshot, then prune old checkpoints.

        Parameters
        ----------
        snapshot : OptimizationSnapshot
            Snapshot to persist

        Returns
        -------
        bool
            True if the checkpoint was saved, False otherwise
        """
        checkpoint_path = self.path_for(snapshot.iteration_index)
        temp_path = checkpoint_path + '.tmp'
        try:
            payload = pickle.dumps(snapshot, protocol=pickle.HIGHEST_PROTOCOL)
            envelope = {
                'magic': CHECKPOINT_MAGIC,
                'format_version': CHECKPOINT_FORMAT_VERSION,
                'iteration_index': snapshot.iteration_index,
                'checksum': sha256(payload).hexdigest(),
                'payload': payload,
            }

            os.makedirs(self.checkpoint_dir, exist_ok=True)
            with open(temp_path, 'wb') as f:
                pickle.dump(envelope, f, protocol=pickle.HIGHEST_PROTOCOL)
                f.flush()
                os.fsync(f.fileno())

            # Atomic rename
            os.replace(temp_path, checkpoint_path)
        except Exception as e:
            logging.error(f"Failed to save checkpoint {checkpoint_path}: {e}")
            if os.path.exists(temp_path):
                try:
                    os.remove(temp_path)
                except OSError as cleanup_error:
                    logging.warning(f"Could not remove {temp_path}: {cleanup_error}")
            return False

        logging.info(
            f"Checkpoint saved to {checkpoint_path} "
            f"(iteration {snapshot.iteration_index}, best cost {snapshot.best_cost:.6e})"
        )
        self.prune()
        return True

    def load(self, iteration):
        """
        Load the checkpoint of one iteration.

        Returns
        -------
        OptimizationSnapshot or None
            None when no checkpoint exists for ``iteration``

        Raises
        ------
        CorruptCheckpoint
            If the file is truncated, tampered with or structurally invalid
        """
        checkpoint_path = self.path_for(iteration)
        if not os.path.exists(checkpoint_path):
            logging.info(f"No checkpoint found at {checkpoint_path}")
            return None

        try:
            with open(checkpoint_path, 'rb') as f:
                envelope = pickle.load(f)
        except Exception as e:
            raise CorruptCheckpoint(checkpoint_path, f"unreadable file ({type(e).__name__}: {e})") from e

        if not isinstance(envelope, dict) or envelope.get('magic') != CHECKPOINT_MAGIC:
            raise CorruptCheckpoint(checkpoint_path, "missing checkpoint marker")
        if envelope.get('format_version') != CHECKPOINT_FORMAT_VERSION:
            raise CorruptCheckpoint(
                checkpoint_path, f"unsupported format version {envelope.get('format_version')}"
            )

        payload = envelope.get('payload')
        if not isinstance(payload, bytes) or sha256(payload).hexdigest() != envelope.get('checksum'):
            raise CorruptCheckpoint(checkpoint_path, "checksum mismatch")

        try:
            snapshot = pickle.loads(payload)
        except Exception as e:
            raise CorruptCheckpoint(checkpoint_path, f"undecodable snapshot ({e})") from e

        if not isinstance(snapshot, OptimizationSnapshot):
            raise CorruptCheckpoint(checkpoint_path, f"unexpected payload type {type(snapshot).__name__}")
        if snapshot.iteration_index != int(iteration) or envelope.get('iteration_index') != int(iteration):
            raise CorruptCheckpoint(
                checkpoint_path,
                f"iteration {snapshot.iteration_index} stored under iteration {iteration}",
            )

        self.validate_snapshot(snapshot, checkpoint_path)
        logging.info(f"Checkpoint loaded from {checkpoint_path} (iteration {snapshot.iteration_index})")
        return snapshot

    def load_latest(self):
        """
        Load the newest checkpoint.

        Returns None when there is none; raises CorruptCheckpoint when the
        newest one is invalid so the caller can decide how to fall back.
        """
        iterations = self.list_iterations()
        if not iterations:
            logging.info(f"No checkpoints found in {self.checkpoint_dir}")
            return None
        return self.load(iterations[-1])

    def validate_snapshot(self, snapshot, path=None):
        """Raise CorruptCheckpoint if the snapshot is structurally inconsistent."""
        path = path or self.path_for(snapshot.iteration_index)

        expected_n = self.population_size
        if expected_n is None and snapshot.config:
            expected_n = snapshot.config.get('population_size')
        if expected_n is None:
            expected_n = len(snapshot.population)

        if snapshot.iteration_index < 0:
            raise CorruptCheckpoint(path, f"negative iteration index {snapshot.iteration_index}")
        if len(snapshot.population) != expected_n:
            raise CorruptCheckpoint(
                path, f"population has {len(snapshot.population)} candidates, expected {expected_n}"
            )
        if len(snapshot.trial_counters) != expected_n:
            raise CorruptCheckpoint(
                path, f"trial counters have {len(snapshot.trial_counters)} entries, expected {expected_n}"
            )
        if np.any(np.asarray(snapshot.trial_counters) < 0):
            raise CorruptCheckpoint(path, "negative trial counter")
        if len(snapshot.convergence_history) != snapshot.iteration_index + 1:
            raise CorruptCheckpoint(
                path,
                f"history has {len(snapshot.convergence_history)} records "
                f"for iteration {snapshot.iteration_index}",
            )

        expected_d = self.dimensions if self.dimensions is not None else snapshot.dimensions
        for i, candidate in enumerate(snapshot.population):
            if np.shape(candidate.position) != (expected_d,):
                raise CorruptCheckpoint(
                    path, f"candidate {i} has shape {np.shape(candidate.position)}, expected ({expected_d},)"
                )
        if np.shape(snapshot.best.position) != (expected_d,):
            raise CorruptCheckpoint(path, "best record has the wrong dimension")

    def prune(self):
        """Delete all but the ``max_checkpoints`` newest checkpoints."""
        iterations = self.list_iterations()
        for iteration in iterations[:-self.max_checkpoints]:
            path = self.path_for(iteration)
            try:
                os.remove(path)
                logging.debug(f"Removed old checkpoint {path}")
            except OSError as e:
                logging.warning(f"Failed to remove old checkpoint {path}: {e}")

    def clear(self):
        """Delete every checkpoint in the directory."""
        for iteration in self.list_iterations():
            try:
                os.remove(self.path_for(iteration))
            except OSError as e:
                logging.warning(f"Failed to remove checkpoint {self.path_for(iteration)}: {e}")
