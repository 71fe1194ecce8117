import sys

from cloud_cost_agent.app.main import main

sys.exit(main())
