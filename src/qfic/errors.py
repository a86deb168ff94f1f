class FractalError(Exception):
    """Base class of every error raised by qfic."""


class OutOfBounds(FractalError, IndexError):
    def __init__(self, x: int, y: int, width: int, height: int) -> None:
        super().__init__(f"({x}, {y}) lies outside of {width}x{height} grid")
        self.x = x
        self.y = y


class InvalidBlockSide(FractalError, ValueError):
    pass


class UnsupportedDimensions(FractalError, ValueError):
    pass


class NoCandidateFound(FractalError):
    def __init__(self, range_side: int) -> None:
        super().__init__(f"domain pool has no candidates for range side {range_side}")
        self.range_side = range_side


class ImageSizeMismatch(FractalError, ValueError):
    pass


class PersistenceError(FractalError):
    pass


class CorruptPayload(PersistenceError):
    pass


class MalformedHeader(PersistenceError):
    pass
