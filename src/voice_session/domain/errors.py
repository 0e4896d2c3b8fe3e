class VoiceSessionError(Exception):
    pass


class DevicePermissionError(VoiceSessionError):
    pass


class AudioDeviceError(VoiceSessionError):
    pass


class CaptureError(AudioDeviceError):
    pass


class ConnectError(VoiceSessionError):
    pass


class ChannelError(VoiceSessionError):
    pass


class DecodeError(VoiceSessionError):
    pass
