"""Tests for tag propagation to spot replacements."""

from autospotting.core.exceptions import ServiceError
from autospotting.services.models import LAUNCHED_BY_TAG, REPLACED_INSTANCE_TAG, GroupTag, InstanceState, MarketType
from autospotting.services.tags import TagSynchronizer


def inspected_group(cloud):
    provider = cloud.provider()
    group = provider.groups.describe_group("web")
    group.instances = provider.instances.describe_instances([m.instance_id for m in group.members])
    return group


class TestDesiredTags:
    """Tag set a replacement should carry."""

    def test_only_propagated_tags_are_copied(self, cloud):
        group = inspected_group(cloud)
        group.tags.append(GroupTag("aws:cloudformation:stack-name", "web-stack", propagate_at_launch=True))

        tags = TagSynchronizer(cloud).desired_tags(group, "i-0001")

        assert tags == {
            "Name": "web",
            "team": "platform",
            LAUNCHED_BY_TAG: "true",
            REPLACED_INSTANCE_TAG: "i-0001",
        }

    def test_without_replaced_instance(self, cloud):
        tags = TagSynchronizer(cloud).desired_tags(inspected_group(cloud))

        assert REPLACED_INSTANCE_TAG not in tags
        assert tags[LAUNCHED_BY_TAG] == "true"


class TestSync:
    """Idempotent tag writes."""

    def test_writes_only_the_difference(self, cloud):
        cloud.add_instance("i-spot1", market=MarketType.SPOT, tags={"Name": "web", "team": "old"})
        sync = TagSynchronizer(cloud)

        written = sync.sync("i-spot1", {"Name": "web", "team": "platform"}, cloud.instances["i-spot1"].tags)

        assert written == {"team": "platform"}
        assert cloud.calls[-1] == ('create_tags', "i-spot1", {"team": "platform"})

    def test_second_sync_makes_no_call(self, cloud):
        cloud.add_instance("i-spot1", market=MarketType.SPOT)
        sync = TagSynchronizer(cloud)
        desired = {"Name": "web", "team": "platform"}

        sync.sync("i-spot1", desired, cloud.instances["i-spot1"].tags)
        written = sync.sync("i-spot1", desired, cloud.instances["i-spot1"].tags)

        assert written == {}
        assert len([c for c in cloud.calls if c[0] == 'create_tags']) == 1

    def test_extra_tags_are_kept(self, cloud):
        cloud.add_instance("i-spot1", market=MarketType.SPOT, tags={"Name": "web", "custom": "x"})

        TagSynchronizer(cloud).sync("i-spot1", {"Name": "web"}, cloud.instances["i-spot1"].tags)

        assert cloud.instances["i-spot1"].tags == {"Name": "web", "custom": "x"}
        assert 'delete_tags' not in [c[0] for c in cloud.calls]


class TestRepairGroup:
    """Drift repair on running spot members."""

    def test_repairs_drifted_spot_members_only(self, cloud):
        cloud.add_instance("i-spot1", group="web", market=MarketType.SPOT, tags={"Name": "web"})
        cloud.add_instance("i-spot2", group="web", market=MarketType.SPOT, tags={"Name": "web", "team": "platform"})
        cloud.add_instance("i-spot3", group="web", market=MarketType.SPOT, state=InstanceState.PENDING)
        group = inspected_group(cloud)

        repaired = TagSynchronizer(cloud).repair_group(group)

        assert repaired == 1
        assert cloud.instances["i-spot1"].tags == {"Name": "web", "team": "platform"}
        assert cloud.instances["i-spot3"].tags == {}
        assert "team" not in cloud.instances["i-0001"].tags
        # Bookkeeping tags are only written on replacements
        assert LAUNCHED_BY_TAG not in cloud.instances["i-spot1"].tags

    def test_failure_on_one_instance_does_not_stop_repair(self, cloud, caplog):
        cloud.add_instance("i-spot1", group="web", market=MarketType.SPOT)
        cloud.add_instance("i-spot2", group="web", market=MarketType.SPOT)
        cloud.fail('create_tags', ServiceError("Request limit exceeded"))
        group = inspected_group(cloud)

        repaired = TagSynchronizer(cloud).repair_group(group)

        assert repaired == 1
        assert "Could not repair tags of i-spot1" in caplog.text
        assert cloud.instances["i-spot2"].tags == {"Name": "web", "team": "platform"}
