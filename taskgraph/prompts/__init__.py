"""Prompt templates and builders for AI operations."""

from taskgraph.prompts.builder import PromptBuilder, get_prompt_builder
from taskgraph.prompts.templates import TEMPLATES, PromptTemplate, get_template

__all__ = [
    "PromptBuilder",
    "PromptTemplate",
    "TEMPLATES",
    "get_prompt_builder",
    "get_template",
]
