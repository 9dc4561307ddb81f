"""Template registry: the immutable catalog of migration templates."""

import heapq
import logging
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Set, Union

from ..errors import StructuralError
from ..models.template import (
    Complexity,
    LoadOperation,
    Step,
    Template,
    TemplateCategory,
)

logger = logging.getLogger(__name__)

BUILTIN_TEMPLATES_DIR = Path(__file__).resolve().parent.parent / "templates"


def resolve_execution_order(steps: Sequence[Step]) -> List[Step]:
    """
    Topologically sort steps by their dependencies.

    Among steps whose dependencies are all satisfied, the one with the lowest
    declared order runs first.

    Raises:
        StructuralError: if a dependency is unknown or the graph has a cycle
    """
    by_name = {step.name: step for step in steps}
    position = {step.name: index for index, step in enumerate(steps)}
    remaining: Dict[str, int] = {}
    dependents: Dict[str, List[str]] = {name: [] for name in by_name}

    for step in steps:
        for dependency in step.depends_on:
            if dependency not in by_name:
                raise StructuralError(
                    f"Step '{step.name}' depends on unknown step '{dependency}'"
                )
            dependents[dependency].append(step.name)
        remaining[step.name] = len(step.depends_on)

    ready = [(step.order, position[step.name], step.name) for step in steps if remaining[step.name] == 0]
    heapq.heapify(ready)
    ordered: List[Step] = []

    while ready:
        _, _, name = heapq.heappop(ready)
        ordered.append(by_name[name])
        for child in dependents[name]:
            remaining[child] -= 1
            if remaining[child] == 0:
                child_step = by_name[child]
                heapq.heappush(ready, (child_step.order, position[child], child))

    if len(ordered) != len(steps):
        cyclic = sorted(name for name, count in remaining.items() if count > 0)
        raise StructuralError(
            f"Dependency cycle detected among steps: {', '.join(cyclic)}",
            details={"steps": cyclic},
        )

    return ordered


def transitive_dependencies(template: Template, step_name: str) -> Set[str]:
    """Every step that `step_name` depends on, directly or indirectly."""
    seen: Set[str] = set()
    stack = [step_name]
    while stack:
        step = template.get_step(stack.pop())
        if step is None:
            continue
        for dependency in step.depends_on:
            if dependency not in seen:
                seen.add(dependency)
                stack.append(dependency)
    return seen


def transitive_dependents(template: Template, step_name: str) -> Set[str]:
    """Every step that depends on `step_name`, directly or indirectly."""
    return {
        step.name for step in template.steps
        if step_name in transitive_dependencies(template, step.name)
    }


class TemplateCatalog:
    """
    Lazy, restartable view over registered templates.

    Each iteration walks a snapshot of the registry taken when the iteration
    starts, so templates registered meanwhile appear on the next pass.
    """

    def __init__(
        self,
        templates: Mapping[str, Template],
        predicate: Optional[Callable[[Template], bool]] = None,
    ):
        self._templates = templates
        self._predicate = predicate

    def __iter__(self) -> Iterator[Template]:
        for template in list(self._templates.values()):
            if self._predicate is None or self._predicate(template):
                yield template

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def ids(self) -> List[str]:
        return [template.id for template in self]


class TemplateRegistry:
    """
    Registry of migration templates.

    Supports:
    - Loading templates from JSON files
    - Structural checks (unique step names, known dependencies, no cycles)
    - Category, complexity and free-text queries
    - Freezing after startup so the catalog never changes at request time
    """

    def __init__(self, templates: Optional[Iterable[Template]] = None):
        """
        Initialize the registry.

        Args:
            templates: Templates to register immediately
        """
        self._templates: Dict[str, Template] = {}
        self._frozen = False
        self._lock = threading.Lock()

        for template in templates or ():
            self.register(template)

    @classmethod
    def from_directory(
        cls,
        directory: Union[str, Path, None] = None,
        include_builtin: bool = True,
        freeze: bool = True,
    ) -> "TemplateRegistry":
        """
        Build a registry from JSON template files.

        Args:
            directory: Extra directory of template JSON files
            include_builtin: Also load the templates shipped with the package
            freeze: Freeze the registry once loaded

        Returns:
            Populated TemplateRegistry
        """
        registry = cls()
        if include_builtin:
            registry.load_from_directory(BUILTIN_TEMPLATES_DIR)
        if directory:
            registry.load_from_directory(directory)
        if freeze:
            registry.freeze()
        return registry

    def load_from_directory(self, directory: Union[str, Path]) -> int:
        """
        Load all template files from a directory.

        Files that cannot be parsed or fail structural checks are logged and
        skipped.

        Returns:
            Number of templates loaded
        """
        loaded = 0
        path = Path(directory)

        if not path.exists():
            logger.warning(f"Template directory does not exist: {directory}")
            return 0

        for file_path in sorted(path.glob("**/*.json")):
            try:
                template = Template.from_json_file(str(file_path))
                self.register(template)
                loaded += 1
                logger.info(f"Loaded template: {template.id} from {file_path}")
            except (StructuralError, OSError, ValueError) as e:
                logger.error(f"Failed to load template from {file_path}: {e}")

        return loaded

    def check_template(self, template: Template) -> List[str]:
        """
        Check a template's structure without registering it.

        Returns:
            List of problems; empty when the template is well formed
        """
        problems: List[str] = []

        if not template.id:
            problems.append("Template id is empty")
        if not template.name:
            problems.append("Template name is empty")
        if not template.steps:
            problems.append("Template has no steps")

        names: Set[str] = set()
        for step in template.steps:
            if step.name in names:
                problems.append(f"Duplicate step name: {step.name}")
            names.add(step.name)

        unknown_dependency = False
        for step in template.steps:
            for dependency in sorted(step.depends_on):
                if dependency == step.name:
                    problems.append(f"Step '{step.name}' depends on itself")
                elif dependency not in names:
                    problems.append(f"Step '{step.name}' depends on unknown step '{dependency}'")
                    unknown_dependency = True

            if step.load.batch_size <= 0:
                problems.append(f"Step '{step.name}' has a non-positive batch size")
            if step.load.operation == LoadOperation.UPSERT and not step.load.external_id_field:
                problems.append(f"Step '{step.name}' upserts without an external id field")
            if step.load.operation == LoadOperation.UPDATE and "Id" not in step.transform.target_fields:
                problems.append(f"Step '{step.name}' updates without mapping a target Id")

        if problems:
            return problems

        try:
            resolve_execution_order(template.steps)
        except StructuralError as e:
            problems.append(e.message)
            return problems

        if not unknown_dependency:
            for step in template.steps:
                upstream = transitive_dependencies(template, step.name)
                for lookup in step.transform.lookups:
                    if lookup.step not in upstream:
                        problems.append(
                            f"Step '{step.name}' resolves {lookup.source_field} through "
                            f"'{lookup.step}', which is not one of its dependencies"
                        )

        return problems

    def register(self, template: Template) -> Template:
        """
        Register a template.

        Registering an identical template again is a no-op.

        Raises:
            StructuralError: if the template is malformed, or a different
                template is already registered under the same id
            RuntimeError: if the registry has been frozen
        """
        problems = self.check_template(template)
        if problems:
            raise StructuralError(
                f"Template '{template.id}' is malformed: {'; '.join(problems)}",
                details={"template_id": template.id, "problems": problems},
            )

        with self._lock:
            existing = self._templates.get(template.id)
            if existing is not None:
                if existing == template:
                    logger.debug(f"Template {template.id} already registered")
                    return existing
                raise StructuralError(
                    f"Template '{template.id}' is already registered with different content",
                    details={"template_id": template.id},
                )
            if self._frozen:
                raise RuntimeError("Template registry is frozen; templates are loaded at startup only")

            self._templates[template.id] = template

        logger.info(f"Registered template {template.id} v{template.version} ({len(template.steps)} steps)")
        return template

    def freeze(self) -> None:
        """Stop accepting new templates."""
        with self._lock:
            self._frozen = True

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def get_template(self, template_id: str) -> Optional[Template]:
        """Get a template by id, or None when it is not registered."""
        return self._templates.get(template_id)

    def list_templates(self) -> TemplateCatalog:
        return TemplateCatalog(self._templates)

    def list_by_category(self, category: Union[TemplateCategory, str]) -> TemplateCatalog:
        category = TemplateCategory(category)
        return TemplateCatalog(self._templates, lambda t: t.category == category)

    def list_by_complexity(self, complexity: Union[Complexity, str]) -> TemplateCatalog:
        complexity = Complexity(complexity)
        return TemplateCatalog(self._templates, lambda t: t.metadata.complexity == complexity)

    def search(self, text: str) -> TemplateCatalog:
        """Templates whose id, name or description contains `text` (case-insensitive)."""
        needle = text.lower()
        return TemplateCatalog(
            self._templates,
            lambda t: needle in t.id.lower() or needle in t.name.lower() or needle in t.description.lower(),
        )

    def execution_order(self, template: Template) -> List[Step]:
        return resolve_execution_order(template.steps)

    def __len__(self) -> int:
        return len(self._templates)

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates
