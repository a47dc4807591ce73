"""
Processors Module

Tokenization and chunking of extracted text into token-bounded segments.
"""

from .chunking_strategies import (
    ChunkingStrategy,
    ChunkingStrategyFactory,
    SemanticChunking,
    TextSection,
    TokenWindowChunking,
    reconstruct_text,
)
from .tokenizers import HuggingFaceTokenCounter, RegexTokenCounter, TokenCounter

__all__ = [
    'ChunkingStrategy',
    'ChunkingStrategyFactory',
    'SemanticChunking',
    'TextSection',
    'TokenWindowChunking',
    'reconstruct_text',
    'HuggingFaceTokenCounter',
    'RegexTokenCounter',
    'TokenCounter',
]
