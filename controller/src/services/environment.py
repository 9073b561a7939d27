"""
Branch to deployment environment mapping.
"""

import fnmatch
import logging
from typing import Iterable, Optional, Tuple

from controller.src.errors import NoEnvironmentMatch
from controller.src.models.step import EnvironmentBinding

logger = logging.getLogger(__name__)


def normalize_ref(ref: str) -> str:
    """refs/heads/main -> main"""
    return ref.replace("refs/heads/", "", 1) if ref.startswith("refs/heads/") else ref


class EnvironmentResolver:
    """Ordered pattern table; the first matching binding wins."""

    def __init__(
        self,
        bindings: Iterable[EnvironmentBinding],
        fallback: Optional[EnvironmentBinding] = None,
    ):
        self._bindings: Tuple[EnvironmentBinding, ...] = tuple(bindings)
        self._fallback = fallback

    def resolve(self, ref: str) -> EnvironmentBinding:
        branch = normalize_ref(ref)

        for binding in self._bindings:
            if fnmatch.fnmatchcase(branch, binding.pattern):
                logger.debug(f"Branch {branch} matched '{binding.pattern}' -> {binding.name}")
                return binding

        if self._fallback is not None:
            logger.info(f"Branch {branch} matched no rule, using fallback {self._fallback.name}")
            return self._fallback

        raise NoEnvironmentMatch(branch)
