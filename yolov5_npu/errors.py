"""
Error taxonomy for the detection engine.

Components raise these; only the `Detector` facade turns them into booleans.
"""


class DetectionError(Exception):
    """Base class for all engine errors."""


class InvalidImage(DetectionError, ValueError):
    pass


class ModelLoadError(DetectionError):
    pass


class UnsupportedZeroCopy(ModelLoadError):
    """The backend cannot place the model's tensors in shared memory."""


class NotReady(DetectionError):
    pass


class ShapeMismatch(DetectionError, ValueError):
    pass


class AcceleratorError(DetectionError):
    """Device failure or timeout during a forward pass. The context stays usable."""


class InvalidClassId(DetectionError, IndexError):
    pass
