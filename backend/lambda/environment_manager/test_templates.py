"""test_templates.py — CloudFormation template generation and naming helpers.

Run: python3 -m pytest test_templates.py -v
"""
from __future__ import annotations

import json
import unittest

import test_support  # noqa: F401

import templates
from models import ServiceDescriptor, service_unique_id, source_object_key


def _svc(repo="acme/api", branch="main", **kwargs):
    return ServiceDescriptor(repo=repo, branch=branch, **kwargs)


class NamingTests(unittest.TestCase):
    def test_unique_id_strips_punctuation_and_appends_index(self):
        self.assertEqual(service_unique_id("acme/web-app", "feature/login", 2), "acmewebappfeaturelogin2")

    def test_source_object_key(self):
        self.assertEqual(source_object_key("acmeapimain0"), "sources/acmeapimain0.zip")

    def test_stack_name_uses_last_six_millis_digits(self):
        self.assertEqual(templates.new_stack_name(now=1700000123.4565), "BB-Env-123456")

    def test_host_tag_is_environment_specific(self):
        self.assertNotEqual(templates.host_tag_value("BB-Env-000001"), templates.host_tag_value("BB-Env-000002"))


class GenerateTemplateTests(unittest.TestCase):
    def test_rejects_empty_service_list(self):
        with self.assertRaises(ValueError):
            templates.generate_template("BB-Env-1", [])

    def test_one_build_project_and_pipeline_per_service(self):
        doc = templates.generate_template("BB-Env-1", [_svc(), _svc("acme/web", "dev")])
        resources = doc["Resources"]
        for uid in ("acmeapimain0", "acmewebdev1"):
            self.assertEqual(resources[f"BuildProject{uid}"]["Type"], "AWS::CodeBuild::Project")
            self.assertEqual(resources[f"Pipeline{uid}"]["Type"], "AWS::CodePipeline::Pipeline")

    def test_duplicate_repo_and_branch_get_distinct_resources(self):
        doc = templates.generate_template("BB-Env-1", [_svc(), _svc()])
        pipelines = [k for k in doc["Resources"] if k.startswith("Pipeline")]
        self.assertEqual(sorted(pipelines), ["Pipelineacmeapimain0", "Pipelineacmeapimain1"])

    def test_pipeline_watches_the_service_source_key(self):
        doc = templates.generate_template("BB-Env-1", [_svc(), _svc("acme/web", "dev")])
        stages = doc["Resources"]["Pipelineacmewebdev1"]["Properties"]["Stages"]
        self.assertEqual([s["Name"] for s in stages], ["Source", "Build", "Deploy"])
        source_cfg = stages[0]["Actions"][0]["Configuration"]
        self.assertEqual(source_cfg["S3ObjectKey"], "sources/acmewebdev1.zip")
        self.assertEqual(source_cfg["S3Bucket"], {"Ref": "ArtifactBucket"})

    def test_poll_flag_controls_source_polling(self):
        on = templates.generate_template("BB-Env-1", [_svc()], poll_for_source_changes=True)
        off = templates.generate_template("BB-Env-1", [_svc()], poll_for_source_changes=False)

        def poll(doc):
            stage = doc["Resources"]["Pipelineacmeapimain0"]["Properties"]["Stages"][0]
            return stage["Actions"][0]["Configuration"]["PollForSourceChanges"]

        self.assertEqual(poll(on), "true")
        self.assertEqual(poll(off), "false")

    def test_deployment_group_targets_only_this_environment_host(self):
        doc = templates.generate_template("BB-Env-42", [_svc()])
        resources = doc["Resources"]
        host_tags = {t["Key"]: t["Value"] for t in resources["DevInstance"]["Properties"]["Tags"]}
        filters = resources["SharedDeploymentGroup"]["Properties"]["Ec2TagFilters"]
        self.assertEqual(filters, [{"Key": "Name", "Value": "BranchBox-BB-Env-42", "Type": "KEY_AND_VALUE"}])
        self.assertEqual(host_tags["Name"], "BranchBox-BB-Env-42")

    def test_custom_specs_reach_build_environment(self):
        doc = templates.generate_template("BB-Env-1", [_svc(buildspec="ci/build.yml", appspec="ci/app.yml")])
        env_vars = doc["Resources"]["BuildProjectacmeapimain0"]["Properties"]["Environment"]["EnvironmentVariables"]
        self.assertIn({"Name": "BUILDSPEC_PATH", "Value": "ci/build.yml"}, env_vars)
        self.assertIn({"Name": "APPSPEC_PATH", "Value": "ci/app.yml"}, env_vars)

    def test_outputs_include_bucket_and_instance(self):
        outputs = templates.generate_template("BB-Env-1", [_svc()])["Outputs"]
        self.assertEqual(outputs["ArtifactBucketName"], {"Value": {"Ref": "ArtifactBucket"}})
        self.assertEqual(outputs["InstanceId"], {"Value": {"Ref": "DevInstance"}})
        self.assertIn("PublicIP", outputs)

    def test_user_data_is_substituted_then_encoded(self):
        user_data = templates.generate_template("BB-Env-1", [_svc()])["Resources"]["DevInstance"]["Properties"]["UserData"]
        self.assertIn("Fn::Sub", user_data["Fn::Base64"])

    def test_render_is_deterministic(self):
        services = [_svc(), _svc("acme/web", "dev")]
        first = templates.render_template("BB-Env-1", services)
        self.assertEqual(first, templates.render_template("BB-Env-1", services))
        self.assertEqual(json.loads(first)["Description"], "BranchBox Environment: BB-Env-1")


if __name__ == "__main__":
    unittest.main()
