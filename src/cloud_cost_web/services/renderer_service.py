import os


def render_prompt() -> str:
    # Get the directory of this file and construct the path to prompts.md
    current_dir = os.path.dirname(os.path.abspath(__file__))
    prompts_path = os.path.join(current_dir, "..", "prompts", "prompts.md")
    with open(prompts_path, encoding="utf-8") as f:
        return f.read()
