"""
Test suite for the workflow catalog

Tests loading the bundled definitions, graph validation, lookups and
step-level approver overrides.
"""

import pytest

from caseflow.catalog import WorkflowCatalog, WorkflowKind, DEFAULT_CATALOG_PATH
from caseflow.exceptions import CatalogValidationError


def minimal_definition(**overrides):
    definition = {
        'type': 'approval',
        'initial_step': 'draft',
        'steps': {
            'draft': {'name': 'Draft', 'editable': True, 'next_steps': ['review']},
            'review': {'name': 'Review', 'next_steps': ['approved', 'rejected']},
            'approved': {'name': 'Approved', 'next_steps': []},
            'rejected': {'name': 'Rejected', 'next_steps': []},
        },
        'approvers': ['reviewer'],
        'sla_hours': 48,
    }
    definition.update(overrides)
    return definition


class TestBundledCatalog:
    """Test the catalog shipped with the package"""

    def test_loads_all_categories(self, catalog):
        assert len(catalog) == 25
        for category in ("student_enrollment", "grades", "field_trip", "procurement_request",
                         "system_access_request", "staff_onboarding"):
            assert category in catalog

    def test_every_definition_is_valid(self, catalog):
        for definition in catalog:
            assert definition.validate() == []
            assert definition.initial_step in definition.steps
            assert definition.sla_hours > 0
            for step in definition.steps.values():
                for target in step.next_steps:
                    assert target in definition.steps

    def test_every_definition_has_a_terminal_step(self, catalog):
        for definition in catalog:
            assert definition.terminal_steps(), definition.category

    def test_student_enrollment_graph(self, catalog):
        definition = catalog.lookup("student_enrollment")

        assert definition.kind == WorkflowKind.APPROVAL
        assert definition.initial_step == "draft"
        assert definition.sla_hours == 72
        assert definition.approver_roles == ("enrollment_officer", "principal", "health_officer")
        assert definition.step("draft").editable is True
        assert definition.step("draft").next_steps == ("review",)
        assert definition.step("review").next_steps == ("approved", "rejected", "needs_info")
        assert definition.step("needs_info").next_steps == ("review",)
        assert sorted(definition.terminal_steps()) == ["approved", "rejected"]

    def test_step_override_roles(self, catalog):
        definition = catalog.lookup("system_access_request")
        assert definition.step("security_review").approver_roles == ("security_officer",)
        assert definition.step("manager_approval").approver_roles is None

    def test_lookup_unknown_category(self, catalog):
        assert catalog.lookup("no_such_category") is None
        assert catalog.lookup(None) is None

    def test_categories_sorted(self, catalog):
        categories = catalog.categories()
        assert categories == sorted(categories)

    def test_checksum_is_stable(self, catalog):
        assert catalog.checksum() == WorkflowCatalog.from_yaml(DEFAULT_CATALOG_PATH).checksum()
        assert len(catalog.checksum()) == 64


class TestCatalogValidation:
    """Test that malformed definitions stop loading"""

    def test_valid_minimal_catalog(self):
        catalog = WorkflowCatalog.from_dict({'purchase': minimal_definition()})
        definition = catalog.lookup('purchase')
        assert definition.is_terminal('approved')
        assert not definition.is_terminal('review')
        assert definition.step('draft').display_name == 'Draft'

    def test_undeclared_next_step(self):
        raw = minimal_definition()
        raw['steps']['review']['next_steps'].append('escalated')

        with pytest.raises(CatalogValidationError) as excinfo:
            WorkflowCatalog.from_dict({'purchase': raw})
        assert any("escalated" in error for error in excinfo.value.errors)

    def test_missing_initial_step(self):
        with pytest.raises(CatalogValidationError, match="initial step 'start'"):
            WorkflowCatalog.from_dict({'purchase': minimal_definition(initial_step='start')})

    @pytest.mark.parametrize("sla_hours", [0, -4, "72", 1.5])
    def test_sla_hours_must_be_positive_integer(self, sla_hours):
        with pytest.raises(CatalogValidationError, match="sla_hours"):
            WorkflowCatalog.from_dict({'purchase': minimal_definition(sla_hours=sla_hours)})

    def test_unknown_workflow_type(self):
        with pytest.raises(CatalogValidationError, match="unknown workflow type"):
            WorkflowCatalog.from_dict({'purchase': minimal_definition(type='bespoke')})

    def test_errors_are_collected_across_categories(self):
        with pytest.raises(CatalogValidationError) as excinfo:
            WorkflowCatalog.from_dict({
                'first': minimal_definition(initial_step='nowhere'),
                'second': minimal_definition(sla_hours=0),
            })
        assert len(excinfo.value.errors) == 2

    def test_duplicate_next_steps_are_collapsed(self):
        raw = minimal_definition()
        raw['steps']['draft']['next_steps'] = ['review', 'review']
        catalog = WorkflowCatalog.from_dict({'purchase': raw})
        assert catalog.lookup('purchase').step('draft').next_steps == ('review',)

    def test_can_edit_alias(self):
        raw = minimal_definition()
        raw['steps']['draft'] = {'name': 'Draft', 'can_edit': True, 'next_steps': ['review']}
        catalog = WorkflowCatalog.from_dict({'purchase': raw})
        assert catalog.lookup('purchase').step('draft').editable is True


class TestYamlLoading:
    """Test loading catalogs from YAML files"""

    def test_from_yaml(self, tmp_path):
        path = tmp_path / "workflows.yaml"
        path.write_text(
            "workflows:\n"
            "  leave:\n"
            "    type: simple\n"
            "    initial_step: draft\n"
            "    steps:\n"
            "      draft: {name: Draft, editable: true, next_steps: [approved]}\n"
            "      approved: {name: Approved, next_steps: []}\n"
            "    approvers: [manager]\n"
            "    sla_hours: 8\n"
        )

        catalog = WorkflowCatalog.from_yaml(path)

        assert catalog.categories() == ["leave"]
        assert catalog.lookup("leave").kind == WorkflowKind.SIMPLE
        assert catalog.lookup("leave").sla_hours == 8

    def test_from_yaml_invalid(self, tmp_path):
        path = tmp_path / "workflows.yaml"
        path.write_text(
            "workflows:\n"
            "  leave:\n"
            "    initial_step: draft\n"
            "    steps:\n"
            "      draft: {next_steps: [approved]}\n"
            "    sla_hours: 8\n"
        )

        with pytest.raises(CatalogValidationError):
            WorkflowCatalog.from_yaml(path)

    def test_duplicate_category_rejected(self, tmp_path):
        path = tmp_path / "workflows.yaml"
        path.write_text(
            "workflows:\n"
            "  enrol:\n"
            "    initial_step: draft\n"
            "    steps:\n"
            "      draft: {next_steps: [approved]}\n"
            "      approved: {next_steps: []}\n"
            "    sla_hours: 8\n"
            "  enrol:\n"
            "    initial_step: start\n"
            "    steps:\n"
            "      start: {next_steps: []}\n"
            "    sla_hours: 4\n"
        )

        with pytest.raises(CatalogValidationError) as exc_info:
            WorkflowCatalog.from_yaml(path)

        assert exc_info.value.errors == ["duplicate key 'enrol' at line 8"]

    def test_duplicate_step_rejected(self, tmp_path):
        path = tmp_path / "workflows.yaml"
        path.write_text(
            "workflows:\n"
            "  leave:\n"
            "    initial_step: draft\n"
            "    steps:\n"
            "      draft: {next_steps: [approved]}\n"
            "      draft: {next_steps: []}\n"
            "      approved: {next_steps: []}\n"
            "    sla_hours: 8\n"
        )

        with pytest.raises(CatalogValidationError, match="duplicate key 'draft'"):
            WorkflowCatalog.from_yaml(path)
