"""Exception taxonomy for the sticker calibration pipeline.

Per-pixel statistical outcomes (InsufficientData, Ambiguous, Unresolved)
are not exceptions; they are `app_types.Outcome` values so a bad pixel never
stops the run.

Copyright (c) 2025 Facundo Gauna & Ulises Carnevale. Licensed under MIT License.
"""


class StickerVisionError(Exception):
    pass


class MalformedSession(StickerVisionError):
    """Bad input to SampleStore.add_session. Surfaced immediately, never retried."""


class EmptyPixelSet(StickerVisionError):
    """No pixels available to aggregate for a (tile, color) pair."""

    def __init__(self, tile_id=None, color_label=None):
        self.tile_id = tile_id
        self.color_label = color_label
        if tile_id is None and color_label is None:
            msg = "no pixel confidences to aggregate"
        else:
            msg = f"no pixel confidences to aggregate for tile={tile_id!r} color={color_label!r}"
        super().__init__(msg)


class InvalidTransition(StickerVisionError):
    """A refiner operation was requested from a state that does not allow it."""


class UnknownPixel(StickerVisionError, KeyError):
    pass
