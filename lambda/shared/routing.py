"""
Event filtering and output-key routing for the PDF converter

- Resolves the inbound notification (S3 notification, single S3 record or
  EventBridge envelope) into a bucket/key pair
- Decides whether the object is eligible for conversion
- Derives the output key so that the converter never re-triggers on its own PDFs
"""

import os
import posixpath
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import unquote_plus

from pipeline_errors import InputError

SUPPORTED_EXTENSIONS = ('.ppt', '.pptx')
OUTPUT_EXTENSION = '.pdf'

REASON_OUT_OF_SCOPE = 'not in input scope'
REASON_UNSUPPORTED_EXTENSION = 'unsupported extension'

SHAPE_S3_NOTIFICATION = 's3-notification'
SHAPE_S3_RECORD = 's3-record'
SHAPE_EVENTBRIDGE = 'eventbridge'


@dataclass(frozen=True)
class RoutingPolicy:
    """Input/output prefix pair. Empty strings mean no restriction / same folder."""

    input_prefix: str = ''
    output_prefix: str = ''

    def __post_init__(self):
        if self.input_prefix and self.output_prefix and (
            self.input_prefix.startswith(self.output_prefix)
            or self.output_prefix.startswith(self.input_prefix)
        ):
            raise ValueError(
                f"INPUT_PREFIX ({self.input_prefix!r}) and OUTPUT_PREFIX "
                f"({self.output_prefix!r}) must not overlap"
            )

    @property
    def separate_folder(self) -> bool:
        return bool(self.output_prefix)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'RoutingPolicy':
        environ = os.environ if environ is None else environ
        return cls(
            input_prefix=environ.get('INPUT_PREFIX', ''),
            output_prefix=environ.get('OUTPUT_PREFIX', ''),
        )


@dataclass(frozen=True)
class ObjectCreatedEvent:
    """Boundary view of an inbound notification, tagged with its payload shape"""

    shape: str
    bucket: str
    raw_key: str


@dataclass(frozen=True)
class ConversionRequest:
    source_bucket: str
    source_key: str


@dataclass(frozen=True)
class EligibilityDecision:
    eligible: bool
    request: ConversionRequest
    reason: Optional[str] = None
    output_key: Optional[str] = None
    source_shape: Optional[str] = None


def resolve_event(payload: Any) -> ObjectCreatedEvent:
    """
    Resolve an inbound payload into an ObjectCreatedEvent

    Accepted shapes:
        {"Records": [{"s3": {"bucket": {"name": ...}, "object": {"key": ...}}}]}
        {"s3": {"bucket": ..., "object": ...}} or {"bucket": ..., "object": ...}
        {"detail": {"bucket": ..., "object": ...}}   (EventBridge)

    Raises:
        InputError: payload matches no shape or lacks bucket/key
    """
    if not isinstance(payload, dict):
        raise InputError(f"Event must be an object, got {type(payload).__name__}")

    if 'Records' in payload:
        records = payload['Records']
        if not isinstance(records, list) or len(records) != 1:
            count = len(records) if isinstance(records, list) else 'invalid'
            raise InputError(f"Expected exactly one S3 record, got {count}")
        record = records[0]
        body = record.get('s3') if isinstance(record, dict) else None
        shape = SHAPE_S3_NOTIFICATION
    elif 'detail' in payload:
        body = payload['detail']
        shape = SHAPE_EVENTBRIDGE
    elif 's3' in payload:
        body = payload['s3']
        shape = SHAPE_S3_RECORD
    elif 'bucket' in payload or 'object' in payload:
        body = payload
        shape = SHAPE_S3_RECORD
    else:
        raise InputError("Unrecognized event shape: no Records, detail or bucket/object fields")

    bucket, key = _bucket_and_key(body)
    return ObjectCreatedEvent(shape=shape, bucket=bucket, raw_key=key)


def _bucket_and_key(body: Any) -> Tuple[str, str]:
    if not isinstance(body, dict):
        raise InputError("Event body is missing bucket/object fields")

    bucket_field = body.get('bucket')
    object_field = body.get('object')
    bucket = bucket_field.get('name') if isinstance(bucket_field, dict) else None
    key = object_field.get('key') if isinstance(object_field, dict) else None

    if not isinstance(bucket, str) or not bucket:
        raise InputError("Event is missing bucket.name")
    if not isinstance(key, str) or not key:
        raise InputError("Event is missing object.key")
    return bucket, key


def to_request(event: ObjectCreatedEvent) -> ConversionRequest:
    # S3 notifications encode spaces as '+'
    return ConversionRequest(source_bucket=event.bucket, source_key=unquote_plus(event.raw_key))


def extension_of(key: str) -> str:
    """Lower-cased final dot-segment of the key's last path component ('' if none)"""
    _, ext = posixpath.splitext(posixpath.basename(key))
    return ext.lower()


def ineligibility_reason(key: str, policy: RoutingPolicy) -> Optional[str]:
    """Return why a key must not be converted under the policy, or None if it may be"""
    if policy.input_prefix and not key.startswith(policy.input_prefix):
        return REASON_OUT_OF_SCOPE
    if extension_of(key) not in SUPPORTED_EXTENSIONS:
        return REASON_UNSUPPORTED_EXTENSION
    return None


def is_eligible(key: str, policy: RoutingPolicy) -> bool:
    return ineligibility_reason(key, policy) is None


def derive_output_key(key: str, policy: RoutingPolicy) -> str:
    """
    Derive the PDF key for an eligible source key

    Same-folder:      deck/intro.PPTX          -> deck/intro.pdf
    Separate-folder:  input/a/b.pptx (input/)  -> output/a/b.pdf (output/)
    """
    ext = extension_of(key)
    if ext not in SUPPORTED_EXTENSIONS:
        raise ValueError(f"Cannot derive output key for unsupported key: {key}")

    if not policy.separate_folder:
        return key[:-len(ext)] + OUTPUT_EXTENSION

    relative = key[len(policy.input_prefix):].lstrip('/')
    relative = relative[:-len(ext)] + OUTPUT_EXTENSION
    if policy.output_prefix.endswith('/'):
        return policy.output_prefix + relative
    return f"{policy.output_prefix}/{relative}"


def evaluate(payload: Dict[str, Any], policy: RoutingPolicy) -> EligibilityDecision:
    """
    Run the event filter over a raw payload

    Returns:
        EligibilityDecision, with output_key set when eligible

    Raises:
        InputError: malformed payload
    """
    event = resolve_event(payload)
    request = to_request(event)
    reason = ineligibility_reason(request.source_key, policy)
    if reason:
        return EligibilityDecision(eligible=False, request=request, reason=reason,
                                   source_shape=event.shape)

    return EligibilityDecision(
        eligible=True,
        request=request,
        output_key=derive_output_key(request.source_key, policy),
        source_shape=event.shape,
    )
