import io
import json
import os
import stat
import sys

import pytest
from PIL import Image

from clip_service.config import Settings

ENCODER_TEMPLATE = """\
#!{python}
import json
import os
import sys
import time

args = sys.argv[1:]
output = args[-1]
with open({argv_log!r}, "w") as fh:
    json.dump(args, fh)
with open({pid_log!r}, "w") as fh:
    fh.write(str(os.getpid()))
mode = {mode!r}
if mode == "hang":
    print("frame=1", flush=True)
    time.sleep(60)
if mode == "fail":
    sys.stderr.write("[libx264 @ 0x1] broken input\\nConversion failed!\\n")
    sys.stderr.flush()
    sys.exit(1)
for frame in (30, 60):
    print("frame=%d" % frame)
    print("out_time_us=%d" % (frame * 33333))
    print("progress=continue", flush=True)
if mode == "ok":
    with open(output, "wb") as fh:
        fh.write(b"\\x00\\x00\\x00\\x18ftypmp42" + b"\\x00" * 64)
print("progress=end", flush=True)
"""


class FakeEncoder:
    def __init__(self, directory, mode):
        self.path = str(directory / f"ffmpeg-{mode}")
        self.argv_log = str(directory / f"ffmpeg-{mode}.argv.json")
        self.pid_log = str(directory / f"ffmpeg-{mode}.pid")
        script = ENCODER_TEMPLATE.format(
            python=sys.executable,
            argv_log=self.argv_log,
            pid_log=self.pid_log,
            mode=mode,
        )
        with open(self.path, "w") as fh:
            fh.write(script)
        os.chmod(self.path, os.stat(self.path).st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    def argv(self):
        with open(self.argv_log) as fh:
            return json.load(fh)

    def pid(self):
        with open(self.pid_log) as fh:
            return int(fh.read())


@pytest.fixture
def make_encoder(tmp_path):
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(exist_ok=True)

    def factory(mode="ok"):
        return FakeEncoder(bin_dir, mode)

    return factory


@pytest.fixture
def font_file(tmp_path):
    path = tmp_path / "fonts" / "DejaVuSans-Bold.ttf"
    path.parent.mkdir()
    path.write_bytes(b"not really a font")
    return str(path)


@pytest.fixture
def settings(tmp_path, font_file):
    return Settings(
        temp_dir=str(tmp_path / "temp"),
        output_dir=str(tmp_path / "output"),
        caption_font_path=font_file,
        caption_font_fallbacks=[],
        webhook_url="",
        worker_count=2,
        render_timeout_seconds=30,
        output_retention_seconds=60,
        _env_file=None,
    )


@pytest.fixture
def png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (64, 48), color=(200, 30, 30)).save(buffer, format="PNG")
    return buffer.getvalue()