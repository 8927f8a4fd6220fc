from __future__ import annotations

from typing import Optional


class ClaimerError(RuntimeError):
    """Base for every failure the claimer raises on purpose."""


class ConfigError(ClaimerError):
    pass


class MintMismatchError(ConfigError):
    def __init__(self, expected: str, onchain: str) -> None:
        super().__init__(f"custody account mint mismatch. expected={expected}, onchain={onchain}")
        self.expected = expected
        self.onchain = onchain


class InvalidAmountFormat(ClaimerError, ValueError):
    pass


class PrecisionExceeded(ClaimerError, ValueError):
    pass


class InvalidEmitterAddress(ClaimerError, ValueError):
    pass


class AttestationServiceError(ClaimerError):
    def __init__(self, status: int, reason: str, url: str) -> None:
        super().__init__(f"attestation api request failed: {status} {reason} url={url}")
        self.status = int(status)
        self.reason = reason
        self.url = url


class MalformedAttestationResponse(ClaimerError):
    pass


class EmptyAttestationPayload(ClaimerError):
    pass


class AttestationDecodeError(ClaimerError):
    def __init__(self, variant: str, reason: str) -> None:
        super().__init__(f"vaa_decode_failed variant={variant} reason={reason}")
        self.variant = variant
        self.reason = reason


class RpcError(ClaimerError):
    def __init__(self, method: str, code: Optional[int], message: str) -> None:
        super().__init__(f"rpc_error method={method} code={code} message={message}")
        self.method = method
        self.code = code
        self.message = message


class RedeemSubmissionFailed(ClaimerError):
    """Signing, submission or confirmation of the redeem sequence failed.

    The underlying error is chained as ``__cause__``.
    """

    def __init__(self, stage: str, detail: str) -> None:
        super().__init__(f"redeem_failed stage={stage} detail={detail}")
        self.stage = stage
        self.detail = detail
