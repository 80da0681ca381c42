import sys

from codecraft.cli import main

sys.exit(main())
