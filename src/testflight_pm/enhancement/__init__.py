"""Optional LLM enhancement of issues before they are filed."""

from .codebase import CodeArea, CodebaseContextScanner, extract_patterns
from .enhancer import BudgetExceededError, EnhancementError, IssueEnhancer, LLMUsage, parse_enhancement
from .llm import ChatClient, ChatReply, OpenAIChatClient, estimate_cost

__all__ = [
    "BudgetExceededError",
    "ChatClient",
    "ChatReply",
    "CodeArea",
    "CodebaseContextScanner",
    "EnhancementError",
    "IssueEnhancer",
    "LLMUsage",
    "OpenAIChatClient",
    "estimate_cost",
    "extract_patterns",
    "parse_enhancement",
]
