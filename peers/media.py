from typing import List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from constants import (
    MEDIA_AUDIO_DEVICE,
    MEDIA_AUDIO_FORMAT,
    MEDIA_VIDEO_DEVICE,
    MEDIA_VIDEO_FORMAT,
    MEDIA_VIDEO_SIZE,
)
from peers.errors import MediaAccessDenied
from logging_config import get_logger

logger = get_logger(__name__)


def _silence(frame: AudioFrame) -> AudioFrame:
    for plane in frame.planes:
        plane.update(bytes(plane.buffer_size))
    return frame


def _black(frame: VideoFrame) -> VideoFrame:
    blank = VideoFrame(width=frame.width, height=frame.height, format="yuv420p")
    luma, *chroma = blank.planes
    luma.update(bytes(luma.buffer_size))
    for plane in chroma:
        plane.update(b"\x80" * plane.buffer_size)
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class SwitchableTrack(MediaStreamTrack):
    """Wraps a capture track so it can be muted without renegotiating.

    While disabled, audio frames are zeroed and video frames replaced by
    black frames of the same size and timing.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            return _silence(frame)
        return _black(frame)

    def stop(self):
        super().stop()
        self.source.stop()


class LocalMedia:
    """The one local capture shared by every PeerLink.

    Each link gets its own relay subscription, so toggling a switchable
    track affects all links at once.
    """

    def __init__(self, audio: Optional[MediaStreamTrack] = None, video: Optional[MediaStreamTrack] = None):
        self.audio = SwitchableTrack(audio) if audio is not None else None
        self.video = SwitchableTrack(video) if video is not None else None
        self._relay = MediaRelay()
        self.released = False

    @property
    def tracks(self) -> List[SwitchableTrack]:
        return [t for t in (self.audio, self.video) if t is not None]

    def subscribe(self) -> List[MediaStreamTrack]:
        return [self._relay.subscribe(track) for track in self.tracks]

    @property
    def audio_enabled(self) -> bool:
        return bool(self.audio and self.audio.enabled)

    @property
    def video_enabled(self) -> bool:
        return bool(self.video and self.video.enabled)

    def toggle_audio(self) -> bool:
        if self.audio is not None:
            self.audio.enabled = not self.audio.enabled
        return self.audio_enabled

    def toggle_video(self) -> bool:
        if self.video is not None:
            self.video.enabled = not self.video.enabled
        return self.video_enabled

    def release(self):
        if self.released:
            return
        for track in self.tracks:
            track.stop()
        self.released = True
        logger.info("Released local camera/microphone")


def _open_player(device: str, fmt: str, options: Optional[dict] = None) -> MediaPlayer:
    return MediaPlayer(device, format=fmt, options=options or {})


async def acquire_local_media(video: bool = True, audio: bool = True) -> LocalMedia:
    """Open the configured camera and microphone.

    Raises MediaAccessDenied if either device cannot be opened; anything
    already opened is stopped first.
    """
    video_track = audio_track = None
    try:
        if video:
            player = _open_player(MEDIA_VIDEO_DEVICE, MEDIA_VIDEO_FORMAT, {"video_size": MEDIA_VIDEO_SIZE})
            video_track = player.video
        if audio:
            player = _open_player(MEDIA_AUDIO_DEVICE, MEDIA_AUDIO_FORMAT)
            audio_track = player.audio
    except (FFmpegError, OSError) as e:
        for track in (video_track, audio_track):
            if track is not None:
                track.stop()
        logger.warning(f"Could not open local media: {e}")
        raise MediaAccessDenied(str(e)) from e

    if (video and video_track is None) or (audio and audio_track is None):
        for track in (video_track, audio_track):
            if track is not None:
                track.stop()
        raise MediaAccessDenied("capture device exposes no usable track")

    logger.info(f"Acquired local media (video={video_track is not None}, audio={audio_track is not None})")
    return LocalMedia(audio=audio_track, video=video_track)
