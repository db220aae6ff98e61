import sys

from fabric_deploy.cli import main

sys.exit(main())
