import sys

from singleschedule.cli import main

sys.exit(main())
