from __future__ import annotations


class Maybe[T]:
    def __init__(self, v: T | None):
        self._v: T | None = v

    # ------------------------
    # -- Negative Accessors --
    # ------------------------
    def or_else[U](self, t: U) -> T | U:
        """
        Pops out of the Maybe, providing back a raw
        type. If the Maybe contains a None, then
        the default value provided to `or_else` is
        returned.
        """
        if self._v is None:
            return t

        return self._v

    # ----------------
    # -- Unwrappers --
    # ----------------
    def unwrap(self) -> T | None:
        return self._v

    # ---------------------
    # -- Status Checkers --
    # ---------------------
    def is_none(self):
        return self._v is None

    def is_some(self):
        return self._v is not None
