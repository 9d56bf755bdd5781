"""
This module wraps the external face-embedding network.

The engine only needs an extractor to be a callable taking an image path and
returning a 1D vector, plus a `name` attribute that identifies the model
version. Cache entries written by one extractor are rejected by another.

Key pieces:
- TorchScriptExtractor: Loads a serialized TorchScript embedding model lazily
- FunctionExtractor: Adapts any plain function to the extractor interface
"""

import hashlib
import logging
import os
import threading

import numpy as np
import torch
import torch.nn.functional as F
from matplotlib import image as mpimg

import config
from reducedemb.errors import ReducedEmbError

logger = logging.getLogger(__name__)


def file_digest(path, length=12):
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()[:length]


class FunctionExtractor:
    """Extractor built from a plain function `fn(path) -> vector`."""

    def __init__(self, fn, name):
        self.fn = fn
        self.name = name

    def __call__(self, path):
        return self.fn(path)


class TorchScriptExtractor:
    """
    Face embedding extractor backed by a TorchScript model.

    Images are expected to be aligned face crops. They are resized to a
    square input, scaled to [-1, 1] and fed to the network in NCHW layout.

    Attributes:
        model_path: Path of the serialized TorchScript model
        input_size: Side length of the square network input
        device: Torch device used for inference
        name: Extractor identifier "<model file>:<content digest>"
    """

    def __init__(self, model_path=config.EXTRACTOR_MODEL_FILE, input_size=config.EXTRACTOR_INPUT_SIZE,
                 device="cpu"):
        if not os.path.isfile(model_path):
            raise ReducedEmbError(f"extractor model {model_path!r} not found", stage="extractor")
        self.model_path = model_path
        self.input_size = input_size
        self.device = torch.device(device)
        self.name = f"{os.path.basename(model_path)}:{file_digest(model_path)}"
        self._model = None
        self._lock = threading.Lock()

    def _load(self):
        with self._lock:
            if self._model is None:
                self._model = torch.jit.load(self.model_path, map_location=self.device)
                self._model.eval()
                logger.info("Loaded extractor model %s", self.name)
            return self._model

    def preprocess(self, path):
        """
        Decode an image file into a normalized (1, 3, S, S) tensor.

        Args:
            path: Image file path

        Returns:
            torch.Tensor: Float tensor in [-1, 1]
        """
        img = np.asarray(mpimg.imread(path))

        # PNG decodes to floats in [0, 1], JPEG to uint8
        if np.issubdtype(img.dtype, np.floating) and img.max() <= 1.0:
            img = img * 255.0
        img = img.astype(np.float32)

        if img.ndim == 2:
            img = np.stack([img] * 3, axis=-1)
        img = img[..., :3]

        tensor = torch.from_numpy(np.ascontiguousarray(img)).permute(2, 0, 1).unsqueeze(0)
        tensor = F.interpolate(tensor, size=(self.input_size, self.input_size),
                               mode="bilinear", align_corners=False)
        return ((tensor - 127.5) / 128.0).to(self.device)

    def __call__(self, path):
        model = self._load()
        with torch.no_grad():
            output = model(self.preprocess(path))
        return output.reshape(-1).cpu().numpy()
