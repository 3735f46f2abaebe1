"""Trust gate: classify a delivered image as verified, unsigned, or failed."""
import logging
from pathlib import Path
from typing import Optional, Protocol, Union

from imgfetch.core.context import FetchContext
from imgfetch.core.errors import CancelledError, VerificationFailedError
from imgfetch.core.types import TrustOutcome

logger = logging.getLogger(__name__)


class Verifier(Protocol):
    """Signature verifier.

    Returns VERIFIED or UNVERIFIED_ACCEPTED, and either returns FAILED or
    raises when verification ran and rejected the image.
    """

    def verify(self, ctx: FetchContext, path: Union[str, Path]) -> TrustOutcome:
        ...


def check_trust(
    ctx: FetchContext,
    path: Union[str, Path],
    verifier: Verifier,
    reference: Optional[str] = None,
    architecture: Optional[str] = None,
) -> TrustOutcome:
    """Run verifier against path.

    The file at path is never removed, even on failure.

    Returns:
        VERIFIED or UNVERIFIED_ACCEPTED

    Raises:
        VerificationFailedError: On a FAILED outcome or any verifier error
        CancelledError: If ctx is cancelled
    """
    ctx.check()
    try:
        outcome = verifier.verify(ctx, path)
    except (CancelledError, VerificationFailedError):
        raise
    except Exception as e:
        raise VerificationFailedError(
            f"failed to verify container: {e}",
            path=str(path),
            reference=reference,
            architecture=architecture,
        ) from e

    if outcome == TrustOutcome.FAILED:
        raise VerificationFailedError(
            "failed to verify container",
            path=str(path),
            reference=reference,
            architecture=architecture,
        )
    logger.debug(f"Trust outcome for {path}: {outcome.value}")
    return outcome
