import os
import sys
import signal

import django

sys.path.append(os.path.join(os.path.dirname(__file__), 'places_platform'))
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "core.settings")
django.setup()

from cells.tasks import start_refresh_workers

pool = start_refresh_workers()
signal.signal(signal.SIGTERM, lambda *_: pool.stop())
try:
    pool.thread.join()
except KeyboardInterrupt:
    pool.stop()
    pool.thread.join(timeout=30)
