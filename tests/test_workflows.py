"""
Test suite for workflow definitions

Tests validation, versioning, active lookup, listing, metadata updates and
cloning of workflow definitions.
"""

import pytest

from approval_engine.directory import Role
from approval_engine.errors import WorkflowNotFoundError, WorkflowValidationError
from approval_engine.workflows import Step, StepAction, WorkflowStore, new_definition


APPROVE_REJECT = frozenset({StepAction.APPROVE, StepAction.REJECT})


def manager_step(step_id="mgr-approval", **kwargs):
    return Step(step_id, Role.MANAGER, kwargs.pop("actions", APPROVE_REJECT), **kwargs)


class TestValidation:
    """Test structural validation of definitions"""

    def test_valid_definition_is_stored(self, store):
        """Test a valid definition gets an id and version 1"""
        definition = new_definition("Leave", "leave", [manager_step(sla_hours=24)])
        definition_id = store.create(definition)

        stored = store.get(definition_id)
        assert stored.name == "Leave"
        assert stored.version == 1
        assert stored.is_active
        assert stored.steps[0].role == Role.MANAGER
        assert stored.steps[0].actions == APPROVE_REJECT

    def test_every_violation_is_reported(self, store):
        """Test validation collects all errors instead of stopping at the first"""
        definition = new_definition("", "", [
            Step("", Role.MANAGER, frozenset()),
            manager_step("dup", order=0, sla_hours=-1),
            manager_step("dup"),
        ])

        with pytest.raises(WorkflowValidationError) as exc_info:
            store.create(definition)

        errors = exc_info.value.errors
        assert "Workflow name is required" in errors
        assert "Flow key is required" in errors
        assert "Step 1: Step ID is required" in errors
        assert "Step 1: At least one action is required" in errors
        assert "Step 2: Order must be a positive number" in errors
        assert "Step 2: SLA hours must not be negative" in errors
        assert "Step 3: Step ID dup is duplicated" in errors
        assert exc_info.value.code == "WORKFLOW_VALIDATION_ERROR"

    def test_empty_steps(self, store):
        """Test a definition needs at least one step"""
        with pytest.raises(WorkflowValidationError) as exc_info:
            store.create(new_definition("Empty", "empty", []))
        assert exc_info.value.errors == ["At least one workflow step is required"]

    def test_step_limit(self, storage):
        """Test the configured step limit"""
        store = WorkflowStore(storage, max_steps=2)
        steps = [manager_step(f"s{i}") for i in range(3)]
        with pytest.raises(WorkflowValidationError) as exc_info:
            store.create(new_definition("Long", "long", steps))
        assert "A workflow may have at most 2 steps" in exc_info.value.errors

    def test_invalid_definition_is_not_stored(self, store):
        with pytest.raises(WorkflowValidationError):
            store.create(new_definition("", "broken", [manager_step()]))
        assert store.count() == 0


class TestLookup:
    """Test get and find_active"""

    def test_unknown_id(self, store):
        with pytest.raises(WorkflowNotFoundError) as exc_info:
            store.get("missing")
        assert exc_info.value.reference == "missing"

    def test_find_active_returns_latest_version(self, store):
        """Test a new definition for a flow key supersedes the older one"""
        first_id = store.create(new_definition("Leave v1", "leave", [manager_step(sla_hours=24)]))
        second_id = store.create(new_definition("Leave v2", "leave", [manager_step(sla_hours=48)]))

        active = store.find_active("leave")
        assert active.id == second_id
        assert active.version == 2
        assert store.get(first_id).version == 1

    def test_find_active_skips_inactive(self, store):
        """Test deactivated definitions are invisible to find_active"""
        first_id = store.create(new_definition("Leave v1", "leave", [manager_step()]))
        second_id = store.create(new_definition("Leave v2", "leave", [manager_step()]))
        store.deactivate(second_id)

        assert store.find_active("leave").id == first_id

        store.deactivate(first_id)
        with pytest.raises(WorkflowNotFoundError):
            store.find_active("leave")

    def test_activate(self, store):
        definition_id = store.create(new_definition("Leave", "leave", [manager_step()]))
        store.deactivate(definition_id, updated_by="adm-1")
        activated = store.activate(definition_id, updated_by="adm-1")
        assert activated.is_active
        assert activated.updated_by == "adm-1"


class TestListing:
    """Test list, count and search"""

    def test_list_filters_and_search(self, store):
        """Test active filter and case-insensitive search"""
        leave_id = store.create(new_definition("Leave Approval", "leave", [manager_step()],
                                               description="Time off"))
        store.create(new_definition("Expense Approval", "expense", [manager_step()]))
        store.deactivate(leave_id)

        assert store.count() == 2
        assert store.count(active=True) == 1
        assert [d.flow_key for d in store.list(active=False)] == ["leave"]
        assert [d.flow_key for d in store.list(search="TIME OFF")] == ["leave"]
        assert [d.flow_key for d in store.list(search="expense")] == ["expense"]

    def test_list_pagination(self, store):
        for i in range(5):
            store.create(new_definition(f"Flow {i}", f"flow-{i}", [manager_step()]))
        assert len(store.list(limit=2)) == 2
        assert len(store.list(limit=2, offset=4)) == 1


class TestUpdates:
    """Test metadata updates and cloning"""

    def test_update_metadata(self, store):
        """Test name and description can change, steps cannot"""
        definition_id = store.create(new_definition("Leave", "leave", [manager_step(sla_hours=24)]))
        updated = store.update(definition_id, name="Leave (2024)", description="Updated",
                               updated_by="adm-1")

        assert updated.name == "Leave (2024)"
        assert updated.description == "Updated"
        assert updated.updated_by == "adm-1"
        assert store.get(definition_id).steps[0].sla_hours == 24

    def test_update_rejects_blank_name(self, store):
        definition_id = store.create(new_definition("Leave", "leave", [manager_step()]))
        with pytest.raises(WorkflowValidationError):
            store.update(definition_id, name="  ")

    def test_clone(self, store):
        """Test clone copies steps under a new flow key"""
        source_id = store.create(new_definition(
            "Expense", "expense",
            [manager_step(sla_hours=24), Step("admin-approval", Role.ADMIN, APPROVE_REJECT, sla_hours=72)],
        ))
        clone_id = store.clone(source_id, "expense-emea", "Expense EMEA", created_by="adm-1")

        clone = store.get(clone_id)
        assert clone.flow_key == "expense-emea"
        assert clone.created_by == "adm-1"
        assert [s.step_id for s in clone.steps] == ["mgr-approval", "admin-approval"]
        assert clone.version == 1


class TestStep:
    """Test the step value type"""

    def test_step_round_trip(self):
        step = Step("mgr", Role.MANAGER, frozenset({StepAction.APPROVE, StepAction.ESCALATE}),
                    sla_hours=8, escalation_role=Role.ADMIN, escalation_hours=2)
        assert Step.from_dict(step.to_dict()) == step

    def test_unknown_keys_are_ignored(self):
        """Test stored snapshots with extra keys still load"""
        data = {"step_id": "mgr", "role": "manager", "actions": ["approve"], "onTimeout": {}}
        step = Step.from_dict(data)
        assert step.allows(StepAction.APPROVE)
        assert not step.allows(StepAction.REJECT)
        assert step.required
