"""Tests for the template loader and parameter resolution."""

import pytest

from stackweave.template.loader import load_template, load_template_string, parse_expression
from stackweave.template.parameters import resolve_parameters
from stackweave.template.references import Base64, GetAtt, ImportValue, Ref, Sub
from stackweave.utils.errors import TemplateError


class TestShortTags:
    """Tests for short-form intrinsic tags."""

    def test_short_and_long_forms_parse_alike(self) -> None:
        """Test that !Ref and {Ref: ...} give the same expression."""
        template = load_template_string("""
Resources:
  A:
    Type: Test::Thing
    Properties:
      Short: !Ref B
      Long:
        Ref: B
      ShortAtt: !GetAtt B.Arn
      LongAtt:
        Fn::GetAtt: [B, Arn]
  B:
    Type: Test::Thing
""")
        properties = template.resources["A"].properties
        assert properties["Short"] == Ref("B")
        assert properties["Long"] == Ref("B")
        assert properties["ShortAtt"] == GetAtt("B", "Arn")
        assert properties["LongAtt"] == GetAtt("B", "Arn")

    def test_nested_base64_sub(self) -> None:
        """Test Fn::Base64 wrapping a !Sub block."""
        template = load_template_string("""
Resources:
  A:
    Type: Test::Thing
    Properties:
      UserData:
        Fn::Base64: !Sub |
          #!/bin/bash
          echo ${AWS::Region}
""")
        user_data = template.resources["A"].properties["UserData"]
        assert isinstance(user_data, Base64)
        assert isinstance(user_data.value, Sub)
        assert "${AWS::Region}" in user_data.value.template

    def test_import_value(self) -> None:
        """Test !ImportValue with a literal export name."""
        template = load_template_string("""
Resources:
  A:
    Type: Test::Thing
    Properties:
      VpcId: !ImportValue VPCId
""")
        assert template.resources["A"].properties["VpcId"] == ImportValue("VPCId")

    def test_sub_with_variables(self) -> None:
        """Test the [string, variables] form of Fn::Sub."""
        value = parse_expression({"Fn::Sub": ["${Name}-web", {"Name": {"Ref": "Env"}}]})
        assert value == Sub("${Name}-web", {"Name": Ref("Env")})

    def test_unsupported_function(self) -> None:
        """Test that unsupported intrinsics are rejected."""
        with pytest.raises(TemplateError, match="Unsupported intrinsic function 'Fn::Join'"):
            load_template_string("""
Resources:
  A:
    Type: Test::Thing
    Properties:
      Name:
        Fn::Join: ["-", [a, b]]
""")

    def test_malformed_getatt(self) -> None:
        """Test that a GetAtt without an attribute is rejected."""
        with pytest.raises(TemplateError, match="Resource.Attribute"):
            parse_expression({"Fn::GetAtt": "JustAResource"}, "Resources.A.Properties.X")


class TestTemplateStructure:
    """Tests for template structure validation."""

    def test_depends_on_string_and_list(self) -> None:
        """Test that DependsOn accepts a single name or a list."""
        template = load_template_string("""
Resources:
  A:
    Type: Test::Thing
    DependsOn: B
  B:
    Type: Test::Thing
    DependsOn: [C]
  C:
    Type: Test::Thing
""")
        assert template.resources["A"].depends_on == ["B"]
        assert template.resources["B"].depends_on == ["C"]
        assert template.resources["C"].depends_on == []

    def test_conditions_rejected(self) -> None:
        """Test that templates with conditions are rejected."""
        with pytest.raises(TemplateError, match="conditions"):
            load_template_string("""
Conditions:
  IsProd: true
Resources:
  A:
    Type: Test::Thing
""")

    def test_resources_required(self) -> None:
        """Test that a template needs at least one resource."""
        with pytest.raises(TemplateError, match="at least one resource"):
            load_template_string("Description: empty\nResources: {}\n")

    def test_invalid_logical_id(self) -> None:
        """Test that logical IDs must be alphanumeric."""
        with pytest.raises(TemplateError, match="Invalid logical ID"):
            load_template_string("""
Resources:
  my-resource:
    Type: Test::Thing
""")

    def test_missing_type(self) -> None:
        """Test that every resource needs a Type."""
        with pytest.raises(TemplateError, match="Type"):
            load_template_string("""
Resources:
  A:
    Properties: {}
""")

    def test_output_export(self) -> None:
        """Test that output export names are parsed."""
        template = load_template_string("""
Resources:
  A:
    Type: Test::Thing
Outputs:
  ThingArn:
    Value: !GetAtt A.Arn
    Export:
      Name: !Sub "${AWS::StackName}-ThingArn"
""")
        output = template.outputs["ThingArn"]
        assert output.value == GetAtt("A", "Arn")
        assert output.export_name == Sub("${AWS::StackName}-ThingArn")

    def test_invalid_yaml(self) -> None:
        """Test that YAML syntax errors become template errors."""
        with pytest.raises(TemplateError, match="Failed to parse template YAML"):
            load_template_string("Resources: [unclosed")

    def test_hash_tracks_content(self) -> None:
        """Test that the template hash changes with content only."""
        text = "Resources:\n  A:\n    Type: Test::Thing\n    Properties:\n      Size: 1\n"
        first = load_template_string(text)
        second = load_template_string(text)
        changed = load_template_string(text.replace("Size: 1", "Size: 2"))
        assert first.template_hash == second.template_hash
        assert first.template_hash != changed.template_hash


class TestAutoscaleTemplate:
    """Tests loading the autoscaling stack template."""

    def test_load(self, fixtures_dir) -> None:
        """Test that every resource, parameter and output is read."""
        template = load_template(fixtures_dir / "autoscale.yaml")

        assert set(template.parameters) == {"KeyName", "AMIId"}
        assert len(template.resources) == 10
        assert template.resources["PrivateAutoScalingGroup"].depends_on == ["EcommerceLoadBalancer"]
        version = template.resources["PrivateLaunchTemplate"]
        assert isinstance(version.properties["LaunchTemplateData"]["UserData"], Base64)
        assert set(template.outputs) == {
            "PrivateAutoScalingGroupName", "LoadBalancerDNSName", "BastionHostPublicIP",
        }

    def test_missing_file(self, tmp_path) -> None:
        """Test that a missing template file is reported."""
        with pytest.raises(TemplateError, match="not found"):
            load_template(tmp_path / "missing.yaml")


class TestParameters:
    """Tests for parameter resolution."""

    TEMPLATE = """
Parameters:
  KeyName:
    Type: String
    Default: ops
  AMIId:
    Type: String
  Size:
    Type: String
    Default: small
    AllowedValues: [small, large]
  Zones:
    Type: CommaDelimitedList
    Default: "us-east-1a, us-east-1b"
Resources:
  A:
    Type: Test::Thing
"""

    def test_defaults_and_supplied(self) -> None:
        """Test that supplied values override defaults."""
        template = load_template_string(self.TEMPLATE)
        values = resolve_parameters(template, {"AMIId": "ami-123", "KeyName": "dev"}, "app", "eu-west-1")

        assert values["AMIId"] == "ami-123"
        assert values["KeyName"] == "dev"
        assert values["Size"] == "small"
        assert values["Zones"] == ["us-east-1a", "us-east-1b"]
        assert values["AWS::StackName"] == "app"
        assert values["AWS::Region"] == "eu-west-1"

    def test_missing_value(self) -> None:
        """Test that a parameter without default needs a value."""
        template = load_template_string(self.TEMPLATE)
        with pytest.raises(TemplateError, match="AMIId") as exc_info:
            resolve_parameters(template, {})
        assert any("--parameter" in suggestion for suggestion in exc_info.value.suggestions)

    def test_allowed_values(self) -> None:
        """Test that values outside AllowedValues are rejected."""
        template = load_template_string(self.TEMPLATE)
        with pytest.raises(TemplateError, match="not one of"):
            resolve_parameters(template, {"AMIId": "ami-123", "Size": "huge"})

    def test_unknown_parameter(self) -> None:
        """Test that undeclared parameters are rejected."""
        template = load_template_string(self.TEMPLATE)
        with pytest.raises(TemplateError, match="Unknown parameter"):
            resolve_parameters(template, {"AMIId": "ami-123", "Colour": "blue"})
