from multiverse.meta.base import MetaClient, TextMetaClient
from multiverse.meta.cli import CLIMetaProvider, CodexCLIProvider
from multiverse.meta.extract import extract_json, extract_yaml, parse_meta_message
from multiverse.meta.mock import MockMetaProvider
from multiverse.meta.openai_chat import OpenAIChatProvider
from multiverse.meta.tooling import ToolingMetaClient, client_for_candidate

__all__ = [
    "CLIMetaProvider",
    "CodexCLIProvider",
    "MetaClient",
    "MockMetaProvider",
    "OpenAIChatProvider",
    "TextMetaClient",
    "ToolingMetaClient",
    "client_for_candidate",
    "extract_json",
    "extract_yaml",
    "parse_meta_message",
]
