import os
import stat
import sys
from pathlib import Path

# Stand-ins for ffmpeg/ffprobe. Behaviour is steered through env vars so a test
# can flip a mode with monkeypatch without rebuilding the scripts.
FAKE_FFMPEG = '''#!{python}
import os, sys, time
log = os.environ.get("FAKE_TOOL_LOG")
if log:
    with open(log, "a") as fh:
        fh.write("ffmpeg " + " ".join(sys.argv[1:]) + "\\n")
mode = os.environ.get("FAKE_FFMPEG_MODE", "ok")
match = os.environ.get("FAKE_FFMPEG_FAIL_MATCH")
if match and any(match in a for a in sys.argv[1:]):
    mode = "fail"
out = sys.argv[-1]
if mode == "fail":
    sys.stderr.write("Invalid data found when processing input\\n")
    sys.exit(1)
if mode == "hang":
    with open(out, "wb") as fh:
        fh.write(b"\\xff\\xd8partial")
    time.sleep(30)
    sys.exit(0)
spans = os.environ.get("FAKE_FFMPEG_SPANS") if out != "-" else None
started = time.time()
time.sleep(float(os.environ.get("FAKE_FFMPEG_SLEEP") or 0))
print("frame=1")
print("out_time=00:00:00.040000")
print("progress=continue")
sys.stdout.flush()
if mode != "nofile" and out != "-":
    with open(out, "wb") as fh:
        fh.write(b"\\xff\\xd8\\xff\\xe0fake-jpeg\\xff\\xd9")
if spans:
    with open(spans, "a") as fh:
        fh.write("%f %f\\n" % (started, time.time()))
print("progress=end")
sys.exit(0)
'''

FAKE_FFPROBE = '''#!{python}
import json, os, sys, time
log = os.environ.get("FAKE_TOOL_LOG")
if log:
    with open(log, "a") as fh:
        fh.write("ffprobe " + " ".join(sys.argv[1:]) + "\\n")
mode = os.environ.get("FAKE_FFPROBE_MODE", "ok")
if mode == "fail":
    sys.stderr.write("moov atom not found\\n")
    sys.exit(1)
if mode == "hang":
    time.sleep(30)
    sys.exit(0)
if mode == "latin1":
    sys.stdout.buffer.write(b'{"format": {"duration": "8", "tags": {"title": "caf\\xe9"}}}')
    sys.exit(0)
if mode == "garbage":
    print("this is not json")
    sys.exit(0)
json.dump({
    "format": {"duration": "8.000000", "format_name": "mov,mp4,m4a,3gp,3g2,mj2", "bit_rate": "1000000"},
    "streams": [
        {"codec_type": "audio", "codec_name": "aac"},
        {"codec_type": "video", "codec_name": "h264", "width": 640, "height": 360,
         "avg_frame_rate": "30000/1001", "r_frame_rate": "30/1"},
    ],
}, sys.stdout)
'''


def write_script(path: Path, template: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(template.replace("{python}", sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


class FakeTools:
    def __init__(self, ffmpeg: Path, ffprobe: Path, log: Path) -> None:
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.log = log

    def calls(self, tool: str) -> list[str]:
        if not self.log.exists():
            return []
        prefix = tool + " "
        return [ln[len(prefix):] for ln in self.log.read_text().splitlines() if ln.startswith(prefix)]

    def thumbnail_calls(self) -> list[str]:
        # Self-test runs go to the null muxer and are not thumbnails
        return [c for c in self.calls("ffmpeg") if not c.endswith(" -")]


def write_video(directory: Path, name: str, data: bytes = b"00") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    p = directory / name
    p.write_bytes(data)
    return p


def pattern_bytes(size: int) -> bytes:
    return bytes(i % 251 for i in range(size))


def files_in(directory: Path) -> list[str]:
    if not directory.exists():
        return []
    return sorted(os.listdir(directory))
