"""
Error taxonomy for the presentation-to-PDF pipeline

Each fatal error carries the stage it came from so the result reporter can
attribute the failure without inspecting messages.
"""


class PipelineError(Exception):
    """Base class for errors that end an invocation"""

    stage = 'unknown'


class InputError(PipelineError):
    """Malformed or unrecognized event payload"""

    stage = 'input'


class FetchError(PipelineError):
    """Source object could not be retrieved into scratch"""

    stage = 'fetch'


class ConversionError(PipelineError):
    """Rendering engine failed or produced no usable PDF"""

    stage = 'convert'


class PublishError(PipelineError):
    """Converted PDF could not be written back to storage"""

    stage = 'publish'


class CleanupWarning(UserWarning):
    """Scratch file removal failed. Logged, never escalated."""
