"""
Static catalog of the selectable RMBG-2.0 ONNX variants.

Every variant is a single ``.onnx`` file whose install path is derived from
its identifier; the presence of that file is the only notion of
"installed" the service has.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple

from .errors import UnknownModelError


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    name: str
    size_mb: int
    ram: str
    speed: str
    quality: str
    is_default: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "sizeMB": self.size_mb,
            "ram": self.ram,
            "speed": self.speed,
            "quality": self.quality,
            "isDefault": self.is_default,
        }


AVAILABLE_MODELS: Tuple[ModelDescriptor, ...] = (
    ModelDescriptor("model.onnx", "High Precision (FP32)", 1024, "~2.0 GB", "Slow", "Excellent"),
    ModelDescriptor(
        "model_fp16.onnx", "Balanced (FP16)", 513, "~1.0 GB", "Fast", "Great", is_default=True
    ),
    ModelDescriptor("model_quantized.onnx", "Fast (INT8)", 366, "~700 MB", "Very Fast", "Good"),
    ModelDescriptor("model_bnb4.onnx", "Ultra Fast (Q4)", 233, "~500 MB", "Fastest", "Acceptable"),
)


class ModelRegistry:
    """Validate model identifiers and map them onto the local install root."""

    def __init__(self, models_dir: Path, models: Tuple[ModelDescriptor, ...] = AVAILABLE_MODELS):
        self.models_dir = Path(models_dir)
        self._models = {m.id: m for m in models}

    def list_models(self) -> List[ModelDescriptor]:
        return list(self._models.values())

    def get(self, model_id: str) -> ModelDescriptor:
        """Return the descriptor for `model_id` or raise UnknownModelError."""
        try:
            return self._models[model_id]
        except (KeyError, TypeError):
            raise UnknownModelError(model_id) from None

    def validate(self, model_id: str) -> None:
        self.get(model_id)

    def default_model(self) -> ModelDescriptor:
        for model in self._models.values():
            if model.is_default:
                return model
        return next(iter(self._models.values()))

    def model_path(self, model_id: str) -> Path:
        descriptor = self.get(model_id)
        return self.models_dir / descriptor.id

    def is_installed(self, model_id: str) -> bool:
        return self.model_path(model_id).is_file()
