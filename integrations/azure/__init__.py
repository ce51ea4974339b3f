#!/usr/bin/env python3
"""
Azure Integrations

Clients for Azure Active Directory (Entra ID), Blob Storage, Files, Key
Vault, Azure OpenAI and Cognitive Search. Storage clients share the
connection string, Shared Key and SAS handling in ``storage``.
"""

from .active_directory import AzureADClient, AzureADSettings, AzureADTokenProvider
from .blob_storage import BlobStorageClient, BlobStorageSettings
from .cognitive_search import CognitiveSearchClient, CognitiveSearchSettings
from .files import AzureFilesClient, AzureFilesSettings
from .key_vault import KeyVaultClient, KeyVaultSettings
from .openai import AzureOpenAIClient, AzureOpenAISettings

__all__ = [
    # Identity
    "AzureADClient",
    "AzureADSettings",
    "AzureADTokenProvider",
    # Storage
    "BlobStorageClient",
    "BlobStorageSettings",
    "AzureFilesClient",
    "AzureFilesSettings",
    # Secrets
    "KeyVaultClient",
    "KeyVaultSettings",
    # AI
    "AzureOpenAIClient",
    "AzureOpenAISettings",
    "CognitiveSearchClient",
    "CognitiveSearchSettings",
]
