import sys

from ecr_cleaner.cli import main

sys.exit(main())
