"""Generation service access and response recovery."""

from .generation_client import GenerationClient, TextGenerator, get_generation_client
from .response_recovery import extract_json_block, recover_json

__all__ = ["GenerationClient", "TextGenerator", "get_generation_client", "extract_json_block", "recover_json"]
