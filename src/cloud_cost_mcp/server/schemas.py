LIST = {
    "calculate_instance_savings": {
        "name": "calculate_instance_savings",
        "description": (
            "Calculate cost comparison between AWS instances and alternative cloud instances. "
            "Provides detailed breakdown of costs, savings, and recommendations."
        ),
        "input_schema": {
            "type": "object",
            "required": ["instances"],
            "properties": {
                "instances": {
                    "type": "array",
                    "description": "List of AWS instance configurations to compare",
                    "minItems": 1,
                    "items": {
                        "type": "object",
                        "required": ["type", "quantity", "region"],
                        "properties": {
                            "type": {
                                "type": "string",
                                "description": "AWS instance type (e.g., 't3.micro', 'm5.large')",
                            },
                            "quantity": {
                                "type": "integer",
                                "description": "Number of instances",
                                "minimum": 1,
                            },
                            "region": {
                                "type": "string",
                                "description": "AWS region (e.g., 'us-east-1', 'us-west-2', 'eu-west-1')",
                            },
                            "hours_per_month": {
                                "type": "integer",
                                "description": "Hours per month (default: 730 for 24/7 operation)",
                                "minimum": 1,
                                "maximum": 744,
                                "default": 730,
                            },
                        },
                    },
                },
            },
        },
    },
    "list_supported_instances": {
        "name": "list_supported_instances",
        "description": "Get a list of supported AWS instance types and regions for cost comparison.",
        "input_schema": {"type": "object", "properties": {}},
    },
}
