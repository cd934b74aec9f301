"""
Workload descriptor (SDL) lookup keyed by product name.
"""
from pathlib import Path
from typing import Optional

from .errors import InvalidProduct

PROVIDER_PLACEHOLDER = "PROVIDER_ADDR_REPLACE_ME"

SDL_FILES = {
    "whisper": "whisper.yaml",
    "sd": "stable-diffusion.yaml",
    "llama": "llama.yaml",
}

BUNDLED_SDL_DIR = Path(__file__).resolve().parent.parent / "sdl"


def render_sdl(product: str, provider: str, sdl_dir: Optional[str] = None) -> str:
    """Load the product's descriptor and pin it to ``provider``."""
    filename = SDL_FILES.get(product)
    if filename is None:
        raise InvalidProduct()
    base = Path(sdl_dir) if sdl_dir else BUNDLED_SDL_DIR
    template = (base / filename).read_text(encoding="utf-8")
    return template.replace(PROVIDER_PLACEHOLDER, provider)
