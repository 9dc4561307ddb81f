"""Command line tools for browsing and checking migration templates."""

import argparse
import json
import logging
import sys
from typing import List, Optional

from .errors import StructuralError
from .models.template import Template
from .services.template_registry import TemplateRegistry, transitive_dependents

logger = logging.getLogger(__name__)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        description="Org Migrator - template-driven org-to-org data migrations"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--templates-dir", help="Extra directory of template JSON files")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # List templates
    list_parser = subparsers.add_parser("templates", help="List available templates")
    list_parser.add_argument("--category", help="Only templates in this category")
    list_parser.add_argument("--complexity", help="Only templates of this complexity")
    list_parser.add_argument("--search", help="Free-text filter on id, name and description")
    list_parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    # Show template
    show_parser = subparsers.add_parser("show-template", help="Show a template's steps")
    show_parser.add_argument("template_id", help="Template id")

    # Check template files
    check_parser = subparsers.add_parser("check-template", help="Check template files for structural errors")
    check_parser.add_argument("files", nargs="+", help="Template JSON files")

    # Execution plan
    plan_parser = subparsers.add_parser("plan", help="Print the execution order of a template")
    plan_parser.add_argument("template_id", help="Template id")

    args = parser.parse_args(argv)

    # Set up logging
    log_level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    if args.command == "templates":
        return list_templates(args)
    elif args.command == "show-template":
        return show_template(args)
    elif args.command == "check-template":
        return check_templates(args)
    elif args.command == "plan":
        return show_plan(args)

    parser.print_help()
    return 1


def _registry(args) -> TemplateRegistry:
    return TemplateRegistry.from_directory(args.templates_dir)


def _find(registry: TemplateRegistry, template_id: str) -> Optional[Template]:
    template = registry.get_template(template_id)
    if template is None:
        print(f"Template not found: {template_id}", file=sys.stderr)
    return template


def list_templates(args) -> int:
    """List registered templates."""
    registry = _registry(args)

    try:
        if args.category:
            catalog = registry.list_by_category(args.category)
        elif args.complexity:
            catalog = registry.list_by_complexity(args.complexity)
        elif args.search:
            catalog = registry.search(args.search)
        else:
            catalog = registry.list_templates()
    except ValueError as e:
        print(f"Invalid filter: {e}", file=sys.stderr)
        return 1

    summaries = [template.summary() for template in catalog]
    if args.json:
        print(json.dumps(summaries, indent=2))
        return 0

    if not summaries:
        print("No templates found")
        return 0

    print(f"\n=== Templates ({len(summaries)}) ===")
    for summary in summaries:
        print(f"\n{summary['id']}  (v{summary['version']})")
        print(f"   {summary['name']}")
        print(
            f"   Category: {summary['category']}  Complexity: {summary['complexity']}  "
            f"Steps: {summary['step_count']}"
        )
    return 0


def show_template(args) -> int:
    """Show a template's steps and mappings."""
    template = _find(_registry(args), args.template_id)
    if template is None:
        return 1

    print(f"\n=== {template.name} ===")
    print(f"Id: {template.id}  Version: {template.version}  Category: {template.category.value}")
    if template.description:
        print(f"Description: {template.description}")

    for step in template.steps:
        print(f"\n[{step.order}] {step.name}: {step.extract.object_type} -> {step.load.object_type}")
        print(f"    Operation: {step.load.operation.value}  Batch size: {step.load.batch_size}")
        if step.depends_on:
            print(f"    Depends on: {', '.join(sorted(step.depends_on))}")
        for mapping in step.transform.field_mappings:
            print(f"    {mapping.source_field} -> {mapping.target_field} ({mapping.transform.value})")
        for lookup in step.transform.lookups:
            print(f"    {lookup.source_field} -> {lookup.target_field} (lookup via {lookup.step})")
        if not step.has_external_id:
            print("    Warning: no external id; re-running creates duplicates")
    return 0


def check_templates(args) -> int:
    """Check template files; exit status 1 if any has problems."""
    registry = TemplateRegistry()
    failures = 0

    for path in args.files:
        try:
            template = Template.from_json_file(path)
        except (StructuralError, OSError, ValueError) as e:
            print(f"FAIL {path}: {e}")
            failures += 1
            continue

        problems = registry.check_template(template)
        if problems:
            failures += 1
            print(f"FAIL {path} ({template.id})")
            for problem in problems:
                print(f"   - {problem}")
        else:
            print(f"OK   {path} ({template.id}, {len(template.steps)} steps)")

    return 1 if failures else 0


def show_plan(args) -> int:
    """Print the execution order with each step's downstream impact."""
    registry = _registry(args)
    template = _find(registry, args.template_id)
    if template is None:
        return 1

    print(f"\n=== Execution plan: {template.id} ===")
    for index, step in enumerate(registry.execution_order(template), start=1):
        dependents = sorted(transitive_dependents(template, step.name))
        print(f"{index}. {step.name} ({step.load.operation.value} {step.load.object_type})")
        if dependents:
            print(f"   If this step fails, skipped: {', '.join(dependents)}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
