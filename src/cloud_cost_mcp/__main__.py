from cloud_cost_mcp.app.main import main

main()
