"""Bridge that starts, talks on stderr, and never creates its socket."""

import sys
import time

print("booting without a socket", file=sys.stderr, flush=True)
while True:
    time.sleep(1)
