import sys

from argocd_deploy.deploy import main

sys.exit(main())
