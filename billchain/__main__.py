import sys

from billchain.cli import main

sys.exit(main())
