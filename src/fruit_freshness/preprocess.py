from __future__ import annotations

import io
from pathlib import PurePath
from typing import Final, Protocol

import torch
from PIL import Image, ImageMath, UnidentifiedImageError
from torch import Tensor

from .errors import AppError, ErrorCode, PreprocessingFailure
from .inference.types import InputSpec, PreprocessOutput
from .logging import get_logger

_IMAGE_SUFFIXES: Final[tuple[str, ...]] = (".jpg", ".jpeg", ".png")
_WIDE_MODES: Final[tuple[str, ...]] = ("I", "I;16", "I;16B", "I;16L", "I;16N")
_DECODE_ERRORS: Final[tuple[type[BaseException], ...]] = (
    ValueError,
    OSError,
    RuntimeError,
    TypeError,
)


class ImageDecoder(Protocol):
    name: str

    def decode_and_resize(self, raw: bytes, size: int) -> Tensor:
        """Decode ``raw`` and stretch it to ``size`` x ``size``.

        Returns a ``uint8`` tensor of shape ``[size, size, 3]`` in RGB order.
        """
        ...


class PillowDecoder:
    name = "pillow"

    def decode_and_resize(self, raw: bytes, size: int) -> Tensor:
        try:
            img = Image.open(io.BytesIO(raw))
            img.load()
        except UnidentifiedImageError:
            raise PreprocessingFailure("Failed to decode image", ErrorCode.invalid_image) from None
        except Image.DecompressionBombError:
            raise PreprocessingFailure("Decompression bomb triggered", ErrorCode.too_large) from None
        except _DECODE_ERRORS as exc:
            raise PreprocessingFailure(f"Failed to decode image: {exc}", ErrorCode.invalid_image) from None
        try:
            rgb = _to_rgb8(img)
            resized = rgb.resize((size, size), resample=Image.Resampling.BILINEAR)
        except _DECODE_ERRORS as exc:
            raise PreprocessingFailure(f"Failed to convert image: {exc}") from None
        buf = bytearray(resized.tobytes())
        return torch.frombuffer(buf, dtype=torch.uint8).reshape(size, size, 3)


def _to_rgb8(img: Image.Image) -> Image.Image:
    if img.mode in _WIDE_MODES:
        # 16-bit samples keep their high byte, matching torchvision's to_dtype(scale=True)
        wide = img if img.mode == "I" else img.convert("I")
        img = ImageMath.lambda_eval(lambda args: args["a"] >> 8, a=wide).convert("L")
    # convert() drops alpha and expands L/P modes
    return img if img.mode == "RGB" else img.convert("RGB")


class TorchvisionDecoder:
    name = "torchvision"

    def decode_and_resize(self, raw: bytes, size: int) -> Tensor:
        from torchvision.io import ImageReadMode, decode_image
        from torchvision.transforms import InterpolationMode
        from torchvision.transforms.v2 import functional as tvf

        if not raw:
            raise PreprocessingFailure("Failed to decode image: empty input", ErrorCode.invalid_image)
        try:
            data = torch.frombuffer(bytearray(raw), dtype=torch.uint8)
            chw = decode_image(data, mode=ImageReadMode.RGB)
        except _DECODE_ERRORS as exc:
            raise PreprocessingFailure(f"Failed to decode image: {exc}", ErrorCode.invalid_image) from None
        try:
            if chw.dtype != torch.uint8:
                chw = tvf.to_dtype(chw, torch.uint8, scale=True)
            resized = tvf.resize(
                chw, [size, size], interpolation=InterpolationMode.BILINEAR, antialias=True
            )
        except _DECODE_ERRORS as exc:
            raise PreprocessingFailure(f"Failed to convert image: {exc}") from None
        return resized.permute(1, 2, 0).contiguous()


_DECODERS: Final[dict[str, type[PillowDecoder] | type[TorchvisionDecoder]]] = {
    PillowDecoder.name: PillowDecoder,
    TorchvisionDecoder.name: TorchvisionDecoder,
}


def decoder_for(name: str) -> ImageDecoder:
    cls = _DECODERS.get(name.strip().lower())
    if cls is None:
        raise ValueError(f"unknown decoder: {name}")
    return cls()


def run_preprocess(
    raw: bytes, spec: InputSpec, decoder: ImageDecoder, *, degraded_mode: bool = False
) -> PreprocessOutput:
    """Turn an encoded photo into the ``[1, H, W, 3]`` float32 tensor the model expects.

    With ``degraded_mode`` a failure yields a random tensor tagged as degraded
    instead of raising; otherwise every failure surfaces as
    :class:`PreprocessingFailure`.
    """
    try:
        return PreprocessOutput(tensor=_to_input_tensor(raw, spec, decoder), degraded=False)
    except AppError as exc:
        if not degraded_mode:
            raise
        get_logger().warning(
            "preprocess_degraded decoder=%s code=%s error=%s", decoder.name, exc.code.value, exc
        )
        return PreprocessOutput(tensor=_random_input(spec), degraded=True)


def _to_input_tensor(raw: bytes, spec: InputSpec, decoder: ImageDecoder) -> Tensor:
    pixels = decoder.decode_and_resize(raw, spec.size)
    try:
        if tuple(pixels.shape) != (spec.size, spec.size, 3) or pixels.dtype != torch.uint8:
            raise ValueError(f"decoder returned {tuple(pixels.shape)} {pixels.dtype}")
        t = pixels.to(dtype=torch.float32)
        if spec.scale == "unit":
            t = t / 255.0
        return t.unsqueeze(0)
    except (ValueError, RuntimeError, TypeError) as exc:
        raise PreprocessingFailure(str(exc)) from None


def _random_input(spec: InputSpec) -> Tensor:
    t = torch.rand((1, spec.size, spec.size, 3), dtype=torch.float32)
    return t if spec.scale == "unit" else t * 255.0


def validate_image_name(name: str) -> bool:
    if not name:
        return False
    return PurePath(name).suffix.lower() in _IMAGE_SUFFIXES
