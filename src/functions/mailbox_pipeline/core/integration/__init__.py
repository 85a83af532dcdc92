"""Adapters for external collaborators."""

from .completion import (
    CATEGORIES,
    Classification,
    ClassificationInput,
    CompletionService,
    OpenAICompletionClient,
)
from .mail_provider import (
    FOLDERS,
    AurinkoMailClient,
    MailboxCredentials,
    MailMessage,
    MailProvider,
    MessagePage,
)
from .research import HttpResearchClient, ResearchService

__all__ = [
    "CATEGORIES",
    "Classification",
    "ClassificationInput",
    "CompletionService",
    "OpenAICompletionClient",
    "FOLDERS",
    "AurinkoMailClient",
    "MailboxCredentials",
    "MailMessage",
    "MailProvider",
    "MessagePage",
    "HttpResearchClient",
    "ResearchService",
]
