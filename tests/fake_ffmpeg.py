"""Stand-in for ffmpeg: copies the -i input to the last argument.

- FAKE_FFMPEG_EXIT   : fail with the given status instead
- FAKE_FFMPEG_SLEEP  : seconds to sleep before writing the output
- FAKE_FFMPEG_PIDFILE: write the process id here on start
"""
import os
import shutil
import sys
import time
from pathlib import Path


def main(argv):
    if argv == ["-version"]:
        print("ffmpeg version 0.0-fake Copyright (c) the test suite")
        return 0
    pidfile = os.environ.get("FAKE_FFMPEG_PIDFILE")
    if pidfile:
        Path(pidfile).write_text(str(os.getpid()))
    time.sleep(float(os.environ.get("FAKE_FFMPEG_SLEEP", "0") or 0))
    code = int(os.environ.get("FAKE_FFMPEG_EXIT", "0") or 0)
    if code:
        sys.stderr.write("Error while filtering: Invalid argument\n")
        return code
    shutil.copyfile(argv[argv.index("-i") + 1], argv[-1])
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
