"""templates.py — CloudFormation template generation for BranchBox environments.

One environment = one shared EC2 host, one shared artifact bucket, fixed IAM
scaffolding, and per service a CodeBuild project plus a three-stage
CodePipeline (S3 source -> CodeBuild -> CodeDeploy).

``generate_template`` is pure: identical input yields an identical document.
The only time-derived value, the stack name, comes from ``new_stack_name``.
"""
from __future__ import annotations

import json
import time
from typing import Any, Dict, List, Optional, Sequence

from config import (
    DEFAULT_APPSPEC,
    DEFAULT_BUILDSPEC,
    PIPELINE_POLL_FOR_SOURCE_CHANGES,
    STACK_NAME_PREFIX,
)
from models import ServiceDescriptor, source_object_key

__all__ = [
    "BUILD_IMAGE",
    "INSTANCE_TYPE",
    "LATEST_AMI_PARAMETER",
    "OUTPUT_BUCKET",
    "OUTPUT_INSTANCE_ID",
    "build_project_logical_id",
    "generate_template",
    "host_tag_value",
    "new_stack_name",
    "pipeline_logical_id",
    "render_template",
]

TEMPLATE_FORMAT_VERSION = "2010-09-09"
LATEST_AMI_PARAMETER = "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-x86_64"
INSTANCE_TYPE = "t3.medium"
BUILD_IMAGE = "aws/codebuild/amazonlinux2-x86_64-standard:4.0"

OUTPUT_BUCKET = "ArtifactBucketName"
OUTPUT_INSTANCE_ID = "InstanceId"

_HOST_USER_DATA = """#!/bin/bash
dnf update -y
dnf install -y ruby wget
# CodeDeploy agent
cd /home/ec2-user
wget https://aws-codedeploy-${AWS::Region}.s3.${AWS::Region}.amazonaws.com/latest/install
chmod +x ./install
./install auto

# Docker + compose plugin
dnf install -y docker
service docker start
systemctl enable docker
usermod -aG docker ec2-user
dnf install -y docker-compose-plugin
"""

# Copies a service's custom spec paths over the default filenames so the
# Deploy stage always finds appspec.yml at the artifact root.
_BUILD_SPEC = f"""version: 0.2
phases:
  install:
    commands:
      - echo Installing dependencies...
  build:
    commands:
      - echo Build started on `date`
      - echo "Handling custom specs..."
      - if [ "$BUILDSPEC_PATH" != "{DEFAULT_BUILDSPEC}" ] && [ -f "$BUILDSPEC_PATH" ]; then cp "$BUILDSPEC_PATH" {DEFAULT_BUILDSPEC}; fi
      - if [ "$APPSPEC_PATH" != "{DEFAULT_APPSPEC}" ] && [ -f "$APPSPEC_PATH" ]; then cp "$APPSPEC_PATH" {DEFAULT_APPSPEC}; fi
artifacts:
  files:
    - '**/*'
"""


def new_stack_name(now: Optional[float] = None) -> str:
    """Stack name from the last six digits of the epoch-millisecond clock."""
    millis = int((time.time() if now is None else now) * 1000)
    return f"{STACK_NAME_PREFIX}-{str(millis)[-6:]}"


def host_tag_value(environment_name: str) -> str:
    """Name tag of the environment's host; the CodeDeploy group filters on it."""
    return f"BranchBox-{environment_name}"


def build_project_logical_id(unique_id: str) -> str:
    return f"BuildProject{unique_id}"


def pipeline_logical_id(unique_id: str) -> str:
    return f"Pipeline{unique_id}"


# ---------------------------------------------------------------------------
# Shared resources
# ---------------------------------------------------------------------------


def _assume_role_policy(service_principal: str) -> Dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Service": service_principal},
                "Action": "sts:AssumeRole",
            }
        ],
    }


def _inline_policy(name: str, statements: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "PolicyName": name,
        "PolicyDocument": {"Version": "2012-10-17", "Statement": statements},
    }


def _allow(actions: Any) -> Dict[str, Any]:
    return {"Effect": "Allow", "Action": actions, "Resource": "*"}


def _iam_resources() -> Dict[str, Any]:
    return {
        "EC2Role": {
            "Type": "AWS::IAM::Role",
            "Properties": {
                "AssumeRolePolicyDocument": _assume_role_policy("ec2.amazonaws.com"),
                "ManagedPolicyArns": [
                    "arn:aws:iam::aws:policy/service-role/AmazonEC2RoleforAWSCodeDeploy",
                    "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore",
                ],
                "Policies": [_inline_policy("S3Access", [_allow(["s3:Get*", "s3:List*"])])],
            },
        },
        "EC2InstanceProfile": {
            "Type": "AWS::IAM::InstanceProfile",
            "Properties": {"Roles": [{"Ref": "EC2Role"}]},
        },
        "PipelineRole": {
            "Type": "AWS::IAM::Role",
            "Properties": {
                "AssumeRolePolicyDocument": _assume_role_policy("codepipeline.amazonaws.com"),
                "Policies": [
                    _inline_policy(
                        "PipelinePolicy",
                        [
                            _allow("s3:*"),
                            _allow("codebuild:*"),
                            _allow("codedeploy:*"),
                            _allow("iam:PassRole"),
                        ],
                    )
                ],
            },
        },
        "CodeBuildRole": {
            "Type": "AWS::IAM::Role",
            "Properties": {
                "AssumeRolePolicyDocument": _assume_role_policy("codebuild.amazonaws.com"),
                "Policies": [_inline_policy("BuildPolicy", [_allow("logs:*"), _allow("s3:*")])],
            },
        },
        "CodeDeployRole": {
            "Type": "AWS::IAM::Role",
            "Properties": {
                "AssumeRolePolicyDocument": _assume_role_policy("codedeploy.amazonaws.com"),
                "ManagedPolicyArns": ["arn:aws:iam::aws:policy/service-role/AWSCodeDeployRole"],
            },
        },
    }


def _shared_resources(environment_name: str) -> Dict[str, Any]:
    host_tag = host_tag_value(environment_name)
    resources: Dict[str, Any] = {
        "ArtifactBucket": {
            "Type": "AWS::S3::Bucket",
            "Properties": {
                "BucketEncryption": {
                    "ServerSideEncryptionConfiguration": [
                        {"ServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}
                    ]
                },
                # CodePipeline S3 sources require a versioned bucket.
                "VersioningConfiguration": {"Status": "Enabled"},
            },
        },
    }
    resources.update(_iam_resources())
    resources.update({
        "DevInstance": {
            "Type": "AWS::EC2::Instance",
            "Properties": {
                "ImageId": {"Ref": "LatestAmiId"},
                "InstanceType": INSTANCE_TYPE,
                "IamInstanceProfile": {"Ref": "EC2InstanceProfile"},
                "SecurityGroups": ["default"],
                "Tags": [
                    {"Key": "Name", "Value": host_tag},
                    {"Key": "EnvType", "Value": "BranchBox"},
                ],
                "UserData": {"Fn::Base64": {"Fn::Sub": _HOST_USER_DATA}},
            },
        },
        "SharedApplication": {
            "Type": "AWS::CodeDeploy::Application",
            "Properties": {"ComputePlatform": "Server"},
        },
        "SharedDeploymentGroup": {
            "Type": "AWS::CodeDeploy::DeploymentGroup",
            "Properties": {
                "ApplicationName": {"Ref": "SharedApplication"},
                "ServiceRoleArn": {"Fn::GetAtt": ["CodeDeployRole", "Arn"]},
                "DeploymentConfigName": "CodeDeployDefault.OneAtATime",
                # Environment-unique tag: stacks in one region never cross-deploy.
                "Ec2TagFilters": [{"Key": "Name", "Value": host_tag, "Type": "KEY_AND_VALUE"}],
            },
        },
    })
    return resources


# ---------------------------------------------------------------------------
# Per-service resources
# ---------------------------------------------------------------------------


def _build_project(environment_name: str, service: ServiceDescriptor, unique_id: str) -> Dict[str, Any]:
    return {
        "Type": "AWS::CodeBuild::Project",
        "Properties": {
            "Name": f"BB-{environment_name}-{unique_id}",
            "ServiceRole": {"Fn::GetAtt": ["CodeBuildRole", "Arn"]},
            "Artifacts": {"Type": "CODEPIPELINE"},
            "Environment": {
                "ComputeType": "BUILD_GENERAL1_SMALL",
                "Image": BUILD_IMAGE,
                "Type": "LINUX_CONTAINER",
                "EnvironmentVariables": [
                    {"Name": "BUILDSPEC_PATH", "Value": service.buildspec or DEFAULT_BUILDSPEC},
                    {"Name": "APPSPEC_PATH", "Value": service.appspec or DEFAULT_APPSPEC},
                ],
            },
            "Source": {"Type": "CODEPIPELINE", "BuildSpec": _BUILD_SPEC},
        },
    }


def _action(name: str, category: str, provider: str, configuration: Dict[str, Any],
            inputs: Sequence[str] = (), outputs: Sequence[str] = ()) -> Dict[str, Any]:
    action: Dict[str, Any] = {
        "Name": name,
        "ActionTypeId": {
            "Category": category,
            "Owner": "AWS",
            "Provider": provider,
            "Version": "1",
        },
        "Configuration": configuration,
        "RunOrder": 1,
    }
    if inputs:
        action["InputArtifacts"] = [{"Name": n} for n in inputs]
    if outputs:
        action["OutputArtifacts"] = [{"Name": n} for n in outputs]
    return action


def _pipeline(unique_id: str, poll_for_source_changes: bool) -> Dict[str, Any]:
    source = _action(
        "S3Source",
        "Source",
        "S3",
        {
            "S3Bucket": {"Ref": "ArtifactBucket"},
            "S3ObjectKey": source_object_key(unique_id),
            "PollForSourceChanges": "true" if poll_for_source_changes else "false",
        },
        outputs=["SourceArtifact"],
    )
    build = _action(
        "CodeBuild",
        "Build",
        "CodeBuild",
        {"ProjectName": {"Ref": build_project_logical_id(unique_id)}},
        inputs=["SourceArtifact"],
        outputs=["BuildArtifact"],
    )
    deploy = _action(
        "CodeDeploy",
        "Deploy",
        "CodeDeploy",
        {
            "ApplicationName": {"Ref": "SharedApplication"},
            "DeploymentGroupName": {"Ref": "SharedDeploymentGroup"},
        },
        inputs=["BuildArtifact"],
    )
    return {
        "Type": "AWS::CodePipeline::Pipeline",
        "Properties": {
            "RoleArn": {"Fn::GetAtt": ["PipelineRole", "Arn"]},
            "ArtifactStore": {"Type": "S3", "Location": {"Ref": "ArtifactBucket"}},
            "Stages": [
                {"Name": "Source", "Actions": [source]},
                {"Name": "Build", "Actions": [build]},
                {"Name": "Deploy", "Actions": [deploy]},
            ],
        },
    }


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------


def generate_template(
    environment_name: str,
    services: Sequence[ServiceDescriptor],
    *,
    poll_for_source_changes: bool = PIPELINE_POLL_FOR_SOURCE_CHANGES,
) -> Dict[str, Any]:
    """Build the CloudFormation document for one environment.

    Each service at index ``i`` contributes ``BuildProject<uid>`` and
    ``Pipeline<uid>`` where ``uid`` is ``service_unique_id(repo, branch, i)``;
    the pipeline's Source stage watches ``sources/<uid>.zip`` in the shared
    artifact bucket.
    """
    if not services:
        raise ValueError("At least one service is required to generate a template")

    template: Dict[str, Any] = {
        "AWSTemplateFormatVersion": TEMPLATE_FORMAT_VERSION,
        "Description": f"BranchBox Environment: {environment_name}",
        "Parameters": {
            "LatestAmiId": {
                "Type": "AWS::SSM::Parameter::Value<AWS::EC2::Image::Id>",
                "Default": LATEST_AMI_PARAMETER,
            },
        },
        "Resources": _shared_resources(environment_name),
        "Outputs": {
            "PublicIP": {"Value": {"Fn::GetAtt": ["DevInstance", "PublicIp"]}},
            "PublicDNS": {"Value": {"Fn::GetAtt": ["DevInstance", "PublicDnsName"]}},
            OUTPUT_INSTANCE_ID: {"Value": {"Ref": "DevInstance"}},
            OUTPUT_BUCKET: {"Value": {"Ref": "ArtifactBucket"}},
        },
    }

    resources = template["Resources"]
    for index, service in enumerate(services):
        unique_id = service.unique_id(index)
        resources[build_project_logical_id(unique_id)] = _build_project(environment_name, service, unique_id)
        resources[pipeline_logical_id(unique_id)] = _pipeline(unique_id, poll_for_source_changes)
    return template


def render_template(environment_name: str, services: Sequence[ServiceDescriptor], **kwargs: Any) -> str:
    """JSON template body suitable for ``CreateStack(TemplateBody=...)``."""
    return json.dumps(generate_template(environment_name, services, **kwargs), sort_keys=True)
