"""
Workflow templates.

Each template is a pure function that fills in defaults for missing
parameters and returns a fully wired graph with fixed node ids, so the
same parameters always produce the same graph.
"""

from __future__ import annotations

from typing import Any, Callable

from comfyflow.models.graph import Graph, GraphNode
from comfyflow.services.graph_builder import NotFoundError

TemplateFn = Callable[[dict[str, Any]], Graph]

# Maps template names to their builder functions.
_registry: dict[str, TemplateFn] = {}


class UnknownTemplateError(NotFoundError):
    def __init__(self, name: str, known: list[str]):
        self.name = name
        self.known = known
        super().__init__(f"Unknown template: {name}. Available: {', '.join(known)}")


def template(name: str):
    """
    Decorator that registers a template builder under ``name``.

    Usage:
        @template("my_template")
        def _build_my_template(params: dict) -> Graph:
            ...
    """
    def decorator(fn: TemplateFn) -> TemplateFn:
        _registry[name] = fn
        return fn
    return decorator


def list_templates() -> list[str]:
    return sorted(_registry)


def build_from_template(name: str, params: dict[str, Any] | None = None) -> Graph:
    fn = _registry.get(name)
    if fn is None:
        raise UnknownTemplateError(name, list_templates())
    return fn(dict(params or {}))


def _with_defaults(defaults: dict[str, Any], params: dict[str, Any]) -> dict[str, Any]:
    merged = dict(defaults)
    merged.update({k: v for k, v in params.items() if v is not None})
    return merged


def _node(operator: str, **inputs: Any) -> GraphNode:
    return GraphNode(operator=operator, inputs=inputs)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

TXT2IMG_DEFAULTS: dict[str, Any] = {
    "width": 1024,
    "height": 1024,
    "steps": 20,
    "cfg": 8,
    "prompt": "",
    "negative_prompt": "",
    "seed": 0,
    "ckpt_name": "sd_xl_base_1.0.safetensors",
    "filename_prefix": "ComfyUI",
    "batch_size": 1,
    "denoise": 1,
    "sampler_name": "euler",
    "scheduler": "normal",
}


@template("txt2img")
def _build_txt2img(params: dict[str, Any]) -> Graph:
    """Checkpoint -> text encode (pos/neg) -> empty latent -> sampler -> decode -> save."""
    p = _with_defaults(TXT2IMG_DEFAULTS, params)
    return {
        "1": _node("CheckpointLoaderSimple", ckpt_name=p["ckpt_name"]),
        "2": _node("CLIPTextEncode", text=p["prompt"], clip=["1", 1]),
        "3": _node("CLIPTextEncode", text=p["negative_prompt"], clip=["1", 1]),
        "4": _node(
            "EmptyLatentImage",
            width=p["width"],
            height=p["height"],
            batch_size=p["batch_size"],
        ),
        "5": _node(
            "KSampler",
            model=["1", 0],
            positive=["2", 0],
            negative=["3", 0],
            latent_image=["4", 0],
            seed=p["seed"],
            steps=p["steps"],
            cfg=p["cfg"],
            sampler_name=p["sampler_name"],
            scheduler=p["scheduler"],
            denoise=p["denoise"],
        ),
        "6": _node("VAEDecode", samples=["5", 0], vae=["1", 2]),
        "7": _node("SaveImage", images=["6", 0], filename_prefix=p["filename_prefix"]),
    }


IMG2IMG_DEFAULTS: dict[str, Any] = {
    **TXT2IMG_DEFAULTS,
    "image": "input.png",
    "denoise": 0.6,
}


@template("img2img")
def _build_img2img(params: dict[str, Any]) -> Graph:
    """Like txt2img, but the latent comes from an encoded input image."""
    p = _with_defaults(IMG2IMG_DEFAULTS, params)
    return {
        "1": _node("CheckpointLoaderSimple", ckpt_name=p["ckpt_name"]),
        "2": _node("CLIPTextEncode", text=p["prompt"], clip=["1", 1]),
        "3": _node("CLIPTextEncode", text=p["negative_prompt"], clip=["1", 1]),
        "4": _node("LoadImage", image=p["image"]),
        "5": _node("VAEEncode", pixels=["4", 0], vae=["1", 2]),
        "6": _node(
            "KSampler",
            model=["1", 0],
            positive=["2", 0],
            negative=["3", 0],
            latent_image=["5", 0],
            seed=p["seed"],
            steps=p["steps"],
            cfg=p["cfg"],
            sampler_name=p["sampler_name"],
            scheduler=p["scheduler"],
            denoise=p["denoise"],
        ),
        "7": _node("VAEDecode", samples=["6", 0], vae=["1", 2]),
        "8": _node("SaveImage", images=["7", 0], filename_prefix=p["filename_prefix"]),
    }


UPSCALE_DEFAULTS: dict[str, Any] = {
    "image": "input.png",
    "model_name": "RealESRGAN_x4plus.pth",
    "filename_prefix": "ComfyUI_upscaled",
}


@template("upscale")
def _build_upscale(params: dict[str, Any]) -> Graph:
    p = _with_defaults(UPSCALE_DEFAULTS, params)
    return {
        "1": _node("LoadImage", image=p["image"]),
        "2": _node("UpscaleModelLoader", model_name=p["model_name"]),
        "3": _node("ImageUpscaleWithModel", upscale_model=["2", 0], image=["1", 0]),
        "4": _node("SaveImage", images=["3", 0], filename_prefix=p["filename_prefix"]),
    }
