from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional

from .context import JobContext

# A handler returns to report success and raises to report failure.
# It may run concurrently with other invocations, including of the same name.
JobFunc = Callable[[JobContext, Dict[str, str]], None]


class JobRegistry:
    """Name -> handler table, built once before the runner starts polling."""

    def __init__(self):
        self._jobs: Dict[str, JobFunc] = {}
        self._frozen: Optional[Mapping[str, JobFunc]] = None

    def register(self, name: str, fn: JobFunc):
        if self._frozen is not None:
            raise RuntimeError(f"cannot register {name!r}: registry is frozen")
        if not name or not name.strip():
            raise ValueError("Job name cannot be empty.")
        if name in self._jobs:
            raise ValueError(f"there is already a job with this name: {name}")
        self._jobs[name] = fn

    def names(self) -> List[str]:
        return sorted(self._jobs)

    def freeze(self) -> Mapping[str, JobFunc]:
        if self._frozen is None:
            self._frozen = MappingProxyType(dict(self._jobs))
        return self._frozen

    def __contains__(self, name: str) -> bool:
        return name in self._jobs
