from abc import ABC, abstractmethod

from ..domain_types import TurnAttestation


class Projection(ABC):
    """Base class for projections over stored turn attestations, fed oldest first."""

    @abstractmethod
    def feed(self, attestation: TurnAttestation) -> None:
        """Process a single receipt to update internal state."""
        pass

    @abstractmethod
    def render(self) -> str:
        """Return a human-readable representation of the projection result."""
        pass
