import base64
import struct

from h2.settings import SettingCodes

from h2c_errors import InvalidSettingValue, UnknownSetting

MAX_SETTING_VALUE = 2**32 - 1

# Operator-facing names, in wire order.
SETTING_NAMES = {
    "push": SettingCodes.ENABLE_PUSH,
    "maxStream": SettingCodes.MAX_CONCURRENT_STREAMS,
    "windowSize": SettingCodes.INITIAL_WINDOW_SIZE,
    "frameSize": SettingCodes.MAX_FRAME_SIZE,
}

DEFAULT_SETTINGS = {
    SettingCodes.ENABLE_PUSH: 0,
    SettingCodes.MAX_CONCURRENT_STREAMS: 250,
    SettingCodes.INITIAL_WINDOW_SIZE: 65535,
    SettingCodes.MAX_FRAME_SIZE: 16384,
}


def parse_value(raw_value):
    if not raw_value.isdigit() or not raw_value.isascii():
        raise InvalidSettingValue(f"Invalid value {raw_value}")
    value = int(raw_value)
    if value > MAX_SETTING_VALUE:
        raise InvalidSettingValue(f"Invalid value {raw_value} (must fit in 32 bits)")
    return value


class TuningSettings:
    """The four SETTINGS parameters offered in the upgrade request and
    re-sent whenever the operator changes them on a live connection.

    Each entry goes on the wire as a 16-bit identifier followed by a 32-bit
    value (RFC 7540, Section 6.5.1). The payload always carries all four
    entries in the order of `SETTING_NAMES`.
    """

    def __init__(self):
        self._values = dict(DEFAULT_SETTINGS)

    def __getitem__(self, name):
        try:
            return self._values[SETTING_NAMES[name]]
        except KeyError:
            raise UnknownSetting(f"Invalid setting option {name}") from None

    @property
    def push(self):
        return self._values[SettingCodes.ENABLE_PUSH] > 0

    @property
    def max_stream(self):
        return self._values[SettingCodes.MAX_CONCURRENT_STREAMS]

    @property
    def window_size(self):
        return self._values[SettingCodes.INITIAL_WINDOW_SIZE]

    @property
    def frame_size(self):
        return self._values[SettingCodes.MAX_FRAME_SIZE]

    def apply(self, name, raw_value):
        """Sets `name` from its textual value and returns whether anything
        changed. Zero never overwrites a setting.
        """
        value = parse_value(raw_value)
        if name not in SETTING_NAMES:
            raise UnknownSetting(f"Invalid setting option {name}")
        if value > 0:
            self._values[SETTING_NAMES[name]] = value
            return True
        return False

    def as_dict(self):
        return {code: self._values[code] for code in SETTING_NAMES.values()}

    def serialize(self):
        payload = b""
        for code, value in self.as_dict().items():
            payload += struct.pack("!HI", code.value, value)
        return payload

    def encode_header(self):
        return base64.urlsafe_b64encode(self.serialize()).rstrip(b"=").decode("ascii")

    def describe(self):
        return (
            f"Enable Push: {str(self.push).lower()} | "
            f"Max Concurrent Streams: {self.max_stream} | "
            f"Init Window Size: {self.window_size} | "
            f"Max Frame Size: {self.frame_size}"
        )

    def __repr__(self):
        settings = [f"{name}={self._values[code]}" for name, code in SETTING_NAMES.items()]
        return f"TuningSettings({', '.join(settings)})"
