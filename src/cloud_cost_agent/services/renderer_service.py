import os

RULE_WIDTH = 60


def render_prompt() -> str:
    # Get the directory of this file and construct the path to prompts.md
    current_dir = os.path.dirname(os.path.abspath(__file__))
    prompts_path = os.path.join(current_dir, "..", "prompts", "prompts.md")
    with open(prompts_path, encoding="utf-8") as f:
        return f.read()


def render_welcome(remote: bool = False) -> str:
    lines = [
        "",
        "=" * RULE_WIDTH,
        "Cloud Cost Comparison Assistant",
        "=" * RULE_WIDTH,
        "Mode: Using MCP server from GitHub" if remote else "Mode: Using local MCP server",
        "",
        "I'll help you compare your AWS instance costs with our",
        "alternative cloud platform.",
        "",
        "To get started, tell me about your current AWS setup. I need:",
        "  - Instance types (e.g., t3.micro, m5.large)",
        "  - How many of each",
        "  - Which AWS region",
        "  - Usage hours per month (I'll assume 24/7 if not specified)",
        "",
        'Type "quit" or "exit" to end the conversation.',
        'Type "reset" to start a new conversation.',
        'Type "help" for more information.',
        "",
        "=" * RULE_WIDTH,
        "",
    ]
    return "\n".join(lines)


def render_help() -> str:
    lines = [
        "",
        "-" * RULE_WIDTH,
        "Help Information",
        "-" * RULE_WIDTH,
        "",
        "This tool compares AWS EC2 instance costs with alternative",
        "cloud pricing to help you understand potential savings.",
        "",
        "Supported Instance Types:",
        "  t3.micro, t3.small, t3.medium",
        "  m5.large, m5.xlarge, m5.2xlarge",
        "  c5.large, c5.xlarge",
        "",
        "Supported Regions:",
        "  us-east-1 (US East - N. Virginia)",
        "  us-west-2 (US West - Oregon)",
        "  eu-west-1 (Europe - Ireland)",
        "",
        "Commands: help, reset, quit, exit",
        "",
        "Example Usage:",
        "  \"I'm running 3 t3.micro instances in us-east-1\"",
        '  "Compare 2 m5.large and 5 t3.small in us-west-2"',
        '  "What about 10 c5.xlarge in eu-west-1, running 12 hours/day"',
        "",
        "-" * RULE_WIDTH,
        "",
    ]
    return "\n".join(lines)
