import sys

from chainload.cli import main

sys.exit(main())
