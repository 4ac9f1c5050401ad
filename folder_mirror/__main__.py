import sys

from folder_mirror.cli import main

sys.exit(main())
