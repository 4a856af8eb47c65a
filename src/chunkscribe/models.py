"""Static table of downloadable whisper.cpp models."""

from dataclasses import dataclass, replace
from typing import Literal

from chunkscribe.errors import UnknownModelError

HF_BASE_URL = "https://huggingface.co/ggerganov/whisper.cpp/resolve/main"


@dataclass(frozen=True)
class ModelDescriptor:
    """A known model. ``cached`` is filled in by ModelCache at query time."""

    id: str
    display_name: str
    size_mb: int
    language: Literal["en", "multilingual"]
    quantized: bool
    source_url: str
    cached: bool | None = None

    def with_cached(self, cached: bool) -> "ModelDescriptor":
        return replace(self, cached=cached)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "size_mb": self.size_mb,
            "language": self.language,
            "quantized": self.quantized,
            "source_url": self.source_url,
            "cached": self.cached,
        }


def _model(model_id: str, display_name: str, size_mb: int, quantized: bool = False) -> ModelDescriptor:
    language = "en" if ".en" in model_id else "multilingual"
    return ModelDescriptor(
        id=model_id,
        display_name=display_name,
        size_mb=size_mb,
        language=language,
        quantized=quantized,
        source_url=f"{HF_BASE_URL}/ggml-{model_id}.bin",
    )


MODEL_TABLE: tuple[ModelDescriptor, ...] = (
    _model("tiny.en", "Tiny English", 75),
    _model("tiny", "Tiny Multilingual", 75),
    _model("base.en", "Base English", 142),
    _model("base", "Base Multilingual", 142),
    _model("small.en", "Small English", 466),
    _model("small", "Small Multilingual", 466),
    _model("tiny.en-q5_1", "Tiny English (Q5_1)", 31, quantized=True),
    _model("tiny-q5_1", "Tiny Multilingual (Q5_1)", 31, quantized=True),
    _model("base.en-q5_1", "Base English (Q5_1)", 57, quantized=True),
    _model("base-q5_1", "Base Multilingual (Q5_1)", 57, quantized=True),
    _model("small.en-q5_1", "Small English (Q5_1)", 182, quantized=True),
    _model("small-q5_1", "Small Multilingual (Q5_1)", 182, quantized=True),
    _model("medium.en-q5_0", "Medium English (Q5_0)", 515, quantized=True),
    _model("medium-q5_0", "Medium Multilingual (Q5_0)", 515, quantized=True),
    _model("large-q5_0", "Large Multilingual (Q5_0)", 1030, quantized=True),
)

_BY_ID = {model.id: model for model in MODEL_TABLE}


def all_models() -> list[ModelDescriptor]:
    """All known models, without cache information."""
    return list(MODEL_TABLE)


def get_model(model_id: str) -> ModelDescriptor:
    """Look up a model by id.

    Raises:
        UnknownModelError: If the id is not in the table.
    """
    try:
        return _BY_ID[model_id]
    except KeyError:
        raise UnknownModelError(f"Model {model_id} not found in config") from None
