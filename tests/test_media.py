import fractions

from aiortc import MediaStreamTrack, VideoStreamTrack
from av import AudioFrame

from peers.media import LocalMedia, SwitchableTrack


class ToneTrack(MediaStreamTrack):
    kind = "audio"

    async def recv(self):
        frame = AudioFrame(format="s16", layout="mono", samples=160)
        for plane in frame.planes:
            plane.update(b"\x01" * plane.buffer_size)
        frame.pts = 0
        frame.sample_rate = 8000
        frame.time_base = fractions.Fraction(1, 8000)
        return frame


async def test_enabled_audio_passes_through():
    track = SwitchableTrack(ToneTrack())

    frame = await track.recv()

    assert set(bytes(frame.planes[0])) == {1}


async def test_disabled_audio_is_silent():
    track = SwitchableTrack(ToneTrack())
    track.enabled = False

    frame = await track.recv()

    assert set(bytes(frame.planes[0])) == {0}
    assert frame.samples == 160


async def test_disabled_video_is_black_with_same_geometry():
    track = SwitchableTrack(VideoStreamTrack())
    track.enabled = False

    frame = await track.recv()

    luma, u, v = frame.planes
    assert (frame.width, frame.height) == (640, 480)
    assert set(bytes(luma)) == {0}
    assert set(bytes(u)) == {0x80}
    assert set(bytes(v)) == {0x80}
    assert frame.pts == 0


def test_toggles_report_new_state():
    media = LocalMedia(audio=ToneTrack(), video=VideoStreamTrack())

    assert media.toggle_audio() is False
    assert media.audio_enabled is False
    assert media.toggle_video() is False
    assert media.toggle_video() is True
    assert media.video_enabled is True


def test_audio_only_media():
    media = LocalMedia(audio=ToneTrack())

    assert [t.kind for t in media.tracks] == ["audio"]
    assert media.toggle_video() is False


def test_release_stops_capture_once():
    source = VideoStreamTrack()
    media = LocalMedia(video=source)

    media.release()
    media.release()

    assert media.released
    assert source.readyState == "ended"
    assert media.video.readyState == "ended"
