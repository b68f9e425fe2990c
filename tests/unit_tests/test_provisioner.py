"""
Unit tests for the Provisioner, backed by the in-memory ARM fake.
"""

import unittest

from errors import AuthError
from fake_arm import CACHE_KEY, REGISTRY_PASSWORD, FakeArm
from models import ResourceKind, ResourceSpec, Secret
from provisioner import FIREWALL_RULE_NAME, Provisioner

RG = "rg1"


def spec(kind, name, depends_on=(), **params):
    return ResourceSpec(
        kind=kind,
        name=name,
        region="eastus",
        resource_group=name if kind == ResourceKind.RESOURCE_GROUP else RG,
        params=params,
        depends_on=tuple(depends_on),
    )


def scenario_specs():
    """resource-group rg1, registry acr1, database db1, service svc1."""
    group = "resource-group/rg1"
    return [
        spec(ResourceKind.RESOURCE_GROUP, RG),
        spec(ResourceKind.CONTAINER_REGISTRY, "acr1", [group]),
        spec(
            ResourceKind.MANAGED_DATABASE,
            "db1",
            [group],
            admin_user="laraveladmin",
            admin_password=Secret("S3cure-Passw0rd"),
        ),
        spec(ResourceKind.WEB_SERVICE, "svc1", [group], plan="plan1"),
    ]


class TestEnsure(unittest.TestCase):
    """Test ensure() for single resources."""

    def setUp(self):
        self.api = FakeArm()
        self.provisioner = Provisioner(self.api)

    def test_creates_missing_resource(self):
        """Test an absent resource is created with its endpoint."""
        result = self.provisioner.ensure(spec(ResourceKind.CONTAINER_REGISTRY, "acr1"))

        self.assertTrue(result.ok)
        self.assertFalse(result.already_existed)
        self.assertEqual(result.endpoint, "acr1.azurecr.io")
        body = self.api.resources[result.resource_id]
        self.assertEqual(body["sku"], {"name": "Basic"})
        self.assertTrue(body["properties"]["adminUserEnabled"])

    def test_second_ensure_is_noop(self):
        """Test ensuring twice reports alreadyExisted and mutates nothing."""
        cache = spec(ResourceKind.MANAGED_CACHE, "cache1")
        self.provisioner.ensure(cache)
        mutations = list(self.api.mutations)

        again = self.provisioner.ensure(cache)

        self.assertTrue(again.already_existed)
        self.assertEqual(again.endpoint, "cache1.redis.cache.windows.net")
        self.assertEqual(self.api.mutations, mutations)

    def test_database_prerequisites(self):
        """Test the database, its schema and the firewall rule are created."""
        db = scenario_specs()[2]
        result = self.provisioner.ensure(db)

        self.assertTrue(result.ok)
        rid = result.resource_id
        self.assertIn(f"{rid}/databases/laravel", self.api.resources)
        rule = self.api.resources[f"{rid}/firewallRules/{FIREWALL_RULE_NAME}"]
        self.assertEqual(rule["properties"]["startIpAddress"], "0.0.0.0")
        self.assertEqual(
            self.api.resources[rid]["properties"]["administratorLoginPassword"],
            "S3cure-Passw0rd",
        )

    def test_existing_database_gets_missing_firewall_rule(self):
        """Test prerequisites are converged even when the server exists."""
        db = scenario_specs()[2]
        rid = self.provisioner.resource_id(db)
        self.api.resources[rid] = {
            "properties": {"fullyQualifiedDomainName": "db1.mysql.database.azure.com"}
        }

        result = self.provisioner.ensure(db)

        self.assertTrue(result.already_existed)
        self.assertIn(("PUT", f"{rid}/firewallRules/{FIREWALL_RULE_NAME}"), self.api.calls)
        self.assertNotIn(("PUT", rid), self.api.calls)

    def test_duplicate_firewall_rule_is_success(self):
        """Test a conflict creating the firewall rule counts as success."""
        db = scenario_specs()[2]
        rid = self.provisioner.resource_id(db)
        self.api.fail("PUT", f"{rid}/firewallRules/{FIREWALL_RULE_NAME}", "Conflict", 409)

        result = self.provisioner.ensure(db)

        self.assertTrue(result.ok)

    def test_provider_error_captured(self):
        """Test provider errors land on the result, verbatim, without raising."""
        cache = spec(ResourceKind.MANAGED_CACHE, "cache1")
        rid = self.provisioner.resource_id(cache)
        self.api.fail("PUT", rid, "QuotaExceeded: Redis quota reached in eastus", 409)

        result = self.provisioner.ensure(cache)

        self.assertFalse(result.ok)
        self.assertIsNone(result.endpoint)
        self.assertIn("QuotaExceeded: Redis quota reached in eastus", result.error)

    def test_database_without_password_fails_cleanly(self):
        """Test a database without a resolved password is reported, not created."""
        db = spec(ResourceKind.MANAGED_DATABASE, "db1", admin_password_env="DB_ADMIN_PASSWORD")

        result = self.provisioner.ensure(db)

        self.assertFalse(result.ok)
        self.assertIn("DB_ADMIN_PASSWORD", result.error)
        self.assertNotIn(("PUT", self.provisioner.resource_id(db)), self.api.calls)

    def test_web_service_points_at_plan(self):
        """Test the site is created on its plan with a placeholder image."""
        web = scenario_specs()[3]
        result = self.provisioner.ensure(web)

        body = self.api.resources[result.resource_id]
        self.assertTrue(body["properties"]["serverFarmId"].endswith("/serverfarms/plan1"))
        self.assertEqual(body["properties"]["siteConfig"]["linuxFxVersion"], "DOCKER|nginx:latest")
        self.assertEqual(result.endpoint, "svc1.azurewebsites.net")

    def test_discover_missing(self):
        """Test discover() never creates anything."""
        result = self.provisioner.discover(spec(ResourceKind.MANAGED_CACHE, "cache1"))

        self.assertFalse(result.ok)
        self.assertEqual(self.api.mutations, [])


class TestProvision(unittest.TestCase):
    """Test provisioning a whole set of specs."""

    def setUp(self):
        self.api = FakeArm()
        self.provisioner = Provisioner(self.api, max_parallel=4)

    def test_end_to_end_create_then_converge(self):
        """Test four absent resources are created, then all found on re-run."""
        specs = scenario_specs()

        first = self.provisioner.provision(specs)

        self.assertEqual(len(first), 4)
        self.assertTrue(all(r.ok for r in first))
        self.assertTrue(all(not r.already_existed for r in first))

        mutations = list(self.api.mutations)
        second = self.provisioner.provision(specs)

        self.assertEqual([r.spec.key for r in second], [s.key for s in specs])
        self.assertTrue(all(r.already_existed for r in second))
        self.assertEqual(self.api.mutations, mutations)

    def test_group_created_before_members(self):
        """Test dependents are created after the resource group."""
        self.provisioner.provision(scenario_specs())

        puts = [rid for verb, rid in self.api.calls if verb == "PUT"]
        group_id = self.api.resource_id(RG)
        self.assertEqual(puts[0], group_id)

    def test_partial_failure_isolated(self):
        """Test one failing resource does not stop independent ones."""
        specs = [
            spec(ResourceKind.CONTAINER_REGISTRY, "acr1"),
            spec(ResourceKind.MANAGED_CACHE, "cache1"),
            spec(ResourceKind.COMPUTE_PLAN, "plan1"),
        ]
        self.api.fail("PUT", self.provisioner.resource_id(specs[1]), "InternalError: boom", 400)

        results = self.provisioner.provision(specs)

        self.assertEqual(len(results), 3)
        self.assertTrue(results[0].ok)
        self.assertFalse(results[1].ok)
        self.assertTrue(results[2].ok)

    def test_dependents_of_failure_reported(self):
        """Test a resource whose dependency failed still gets a result."""
        specs = [
            spec(ResourceKind.COMPUTE_PLAN, "plan1"),
            spec(ResourceKind.WEB_SERVICE, "svc1", ["compute-plan/plan1"], plan="plan1"),
        ]
        self.api.fail("PUT", self.provisioner.resource_id(specs[0]), "SkuNotAvailable", 400)

        results = self.provisioner.provision(specs)

        self.assertFalse(results[0].ok)
        self.assertFalse(results[1].ok)
        self.assertIn("plan1", results[1].error)

    def test_results_recorded_in_report(self):
        """Test every result is written to the report."""
        recorded = []

        class Recorder:
            def record_provision(self, result):
                recorded.append(result.spec.key)

        self.provisioner.provision(scenario_specs(), report=Recorder())

        self.assertEqual(sorted(recorded), sorted(s.key for s in scenario_specs()))


class TestConnectionDetails(unittest.TestCase):
    """Test registry credentials and cache keys."""

    def setUp(self):
        self.api = FakeArm()
        self.provisioner = Provisioner(self.api)

    def test_registry_ref(self):
        """Test registry credentials are read and kept secret."""
        acr = spec(ResourceKind.CONTAINER_REGISTRY, "acr1")
        self.provisioner.ensure(acr)

        ref = self.provisioner.registry_ref(acr)

        self.assertEqual(ref.login_server, "acr1.azurecr.io")
        self.assertEqual(ref.username, "acr1")
        self.assertEqual(ref.password.reveal(), REGISTRY_PASSWORD)
        self.assertNotIn(REGISTRY_PASSWORD, repr(ref))

    def test_registry_ref_missing_registry(self):
        """Test a missing registry is an authentication failure."""
        with self.assertRaises(AuthError):
            self.provisioner.registry_ref(spec(ResourceKind.CONTAINER_REGISTRY, "acr1"))

    def test_cache_key(self):
        """Test the cache key is returned as a Secret."""
        key = self.provisioner.cache_key(spec(ResourceKind.MANAGED_CACHE, "cache1"))
        self.assertEqual(key.reveal(), CACHE_KEY)


if __name__ == "__main__":
    unittest.main()
