from controller.src.services.definition_loader import load_definition, load_definition_dict
from controller.src.services.environment import EnvironmentResolver
from controller.src.services.credentials import CredentialResolver, CredentialHandle

__all__ = [
    "load_definition",
    "load_definition_dict",
    "EnvironmentResolver",
    "CredentialResolver",
    "CredentialHandle",
]
