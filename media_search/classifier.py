import logging
import threading
from abc import ABC, abstractmethod

import numpy as np
import torch
from PIL import Image

from config import CLASSIFIER_MODEL, CLASSIFIER_PRETRAINED
from labels import CLASSIFIER_VOCABULARY

logger = logging.getLogger(__name__)


def get_device() -> torch.device:
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():
        return torch.device("mps")
    return torch.device("cpu")


class VisualClassifier(ABC):
    """Base interface for image labelers."""

    @abstractmethod
    def classify(self, image: Image.Image) -> list[tuple[str, float]]:
        """Return (label, confidence) pairs, highest confidence first."""


class ClipLabelClassifier(VisualClassifier):
    """Zero-shot labeling with a CLIP or SigLIP model via open_clip.

    SigLIP was trained with a sigmoid loss, so each label gets an independent
    probability. Plain CLIP scores are softmaxed across the vocabulary.
    """

    def __init__(
        self,
        model_name: str = CLASSIFIER_MODEL,
        pretrained: str = CLASSIFIER_PRETRAINED,
        vocabulary: list[str] | None = None,
    ):
        self.model_name = model_name
        self.pretrained = pretrained
        self.vocabulary = list(vocabulary or CLASSIFIER_VOCABULARY)
        self._model = None
        self._preprocess = None
        self._text_features = None
        self._device = None
        self._load_lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        return self._model is not None

    def load(self, device: torch.device | None = None) -> None:
        import open_clip

        with self._load_lock:
            if self._model is not None:
                return
            self._device = device or get_device()
            logger.info("Loading %s (%s) on %s", self.model_name, self.pretrained, self._device)
            model, _, preprocess = open_clip.create_model_and_transforms(
                self.model_name, pretrained=self.pretrained or None
            )
            tokenizer = open_clip.get_tokenizer(self.model_name)
            model = model.to(self._device)
            model.eval()

            prompts = [f"a photo of {label.replace('_', ' ')}" for label in self.vocabulary]
            tokens = tokenizer(prompts).to(self._device)
            with torch.no_grad():
                text_features = model.encode_text(tokens)
                text_features /= text_features.norm(dim=-1, keepdim=True)

            self._preprocess = preprocess
            self._text_features = text_features
            self._model = model
            logger.info("Loaded %s with %d labels", self.model_name, len(self.vocabulary))

    def _scores(self, image: Image.Image) -> np.ndarray:
        tensor = self._preprocess(image.convert("RGB")).unsqueeze(0).to(self._device)
        with torch.no_grad():
            features = self._model.encode_image(tensor)
            features /= features.norm(dim=-1, keepdim=True)
            logits = features @ self._text_features.T * self._model.logit_scale.exp()
            bias = getattr(self._model, "logit_bias", None)
            if bias is not None:
                probs = torch.sigmoid(logits + bias)
            else:
                probs = logits.softmax(dim=-1)
        return probs[0].cpu().numpy().astype(np.float32)

    def classify(self, image: Image.Image) -> list[tuple[str, float]]:
        if not self.loaded:
            self.load()
        scores = self._scores(image)
        order = np.argsort(-scores)
        return [(self.vocabulary[i], float(scores[i])) for i in order]
