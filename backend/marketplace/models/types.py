from sqlalchemy import Enum as SAEnum


class CaseInsensitiveEnum(SAEnum):
    """Enum column type that stores enum values and tolerates legacy spellings.

    Values are lower-cased on the way in and out; enums that define
    ``_missing_`` (``BookingStatus`` maps ``pending_buyer`` to ``pending-buyer``)
    get a chance to normalise rows written by older clients.
    """

    def __init__(self, enum_cls, **kwargs):
        self._enum_cls = enum_cls
        self._enum_kwargs = kwargs.copy()
        kwargs.setdefault("values_callable", lambda enum: [e.value for e in enum])
        super().__init__(enum_cls, **kwargs)

    def adapt(self, impltype, **kw):
        params = {**self._enum_kwargs, **kw}
        return CaseInsensitiveEnum(self._enum_cls, **params)

    def _normalize(self, value):
        if isinstance(value, self._enum_cls):
            return value.value
        if isinstance(value, str):
            return self._enum_cls(value.strip().lower()).value
        return value

    def bind_processor(self, dialect):
        parent = super().bind_processor(dialect)

        def process(value):
            if value is None:
                return None
            value = self._normalize(value)
            if parent:
                return parent(value)
            return value

        return process

    def result_processor(self, dialect, coltype):
        parent = super().result_processor(dialect, coltype)

        def process(value):
            if value is None:
                return None
            value = self._normalize(value)
            if parent:
                return parent(value)
            return value

        return process
