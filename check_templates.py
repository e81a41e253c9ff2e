import sys
from pathlib import Path

from jinja2 import TemplateSyntaxError

PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


def find_template_errors() -> list[str]:
    """Compile every page template with the app's own Jinja environment."""
    from doki_chat.web.app import templates, templates_dir

    env = templates.env
    problems: list[str] = []
    for template_path in sorted(templates_dir.rglob("*.html")):
        name = template_path.relative_to(templates_dir).as_posix()
        try:
            env.get_template(name)
        except TemplateSyntaxError as exc:
            problems.append(f"{name}:{exc.lineno} - {exc.message}")
        except Exception as exc:
            problems.append(f"{name} - {exc}")
    return problems


def main():
    problems = find_template_errors()
    for problem in problems:
        print(f"Template error in {problem}")
    if problems:
        print(f"Found {len(problems)} template errors.")
        sys.exit(1)
    print("All templates parsed successfully.")
    sys.exit(0)


if __name__ == "__main__":
    main()
