"""Provider child processes and request correlation."""

from toolrelay.providers.process import ProviderProcess
from toolrelay.providers.supervisor import ProviderSupervisor

__all__ = ["ProviderProcess", "ProviderSupervisor"]
