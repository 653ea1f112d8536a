import os

from aws_cdk import (
    Aws,
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_apigateway as apigw,
    aws_iam as iam,
    aws_lambda as _lambda,
    aws_logs as logs,
)
from constructs import Construct


class TokenVendingStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        stage_name = os.getenv("STAGE", "prod")
        data_retention_mode = os.getenv("DATA_RETENTION_MODE", "destroy").strip().lower()
        if data_retention_mode not in {"destroy", "retain"}:
            raise ValueError(
                "DATA_RETENTION_MODE must be 'destroy' or 'retain' (case-insensitive)"
            )
        # SimpleDB domains are created at runtime and outlive the stack either way;
        # this only covers log groups.
        stateful_removal_policy = (
            RemovalPolicy.DESTROY
            if data_retention_mode == "destroy"
            else RemovalPolicy.RETAIN
        )
        app_name = os.getenv("TVM_APP_NAME", "mymobileappname").strip().lower()
        domain_prefix = os.getenv("TVM_DOMAIN_PREFIX", "TokenVendingMachine").strip()
        # SimpleDB is only offered in a handful of regions; default to the stack's.
        sdb_region = (os.getenv("TVM_SDB_REGION") or "").strip() or Aws.REGION
        # Lambda credentials are already a role session, so assuming the issuer
        # role is role chaining and capped at one hour.
        session_duration_seconds = int(os.getenv("TVM_SESSION_DURATION_SECONDS", "3600"))
        if session_duration_seconds < 900 or session_duration_seconds > 3600:
            raise ValueError("TVM_SESSION_DURATION_SECONDS must be between 900 and 3600")
        schema_version = "2026-10-19"

        name_prefix = f"{construct_id}-{stage_name}"
        sdb_domain_arn_base = f"arn:{Aws.PARTITION}:sdb:{sdb_region}:{Aws.ACCOUNT_ID}:domain"
        identity_domains_arn = f"{sdb_domain_arn_base}/{domain_prefix}_{app_name}_*"

        lambda_execution_role = iam.Role(
            self,
            "TvmLambdaExecutionRole",
            assumed_by=iam.ServicePrincipal("lambda.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name(
                    "service-role/AWSLambdaBasicExecutionRole"
                )
            ],
        )
        lambda_execution_role.add_to_policy(
            iam.PolicyStatement(
                actions=["sdb:ListDomains"],
                resources=["*"],
            )
        )
        lambda_execution_role.add_to_policy(
            iam.PolicyStatement(
                actions=[
                    "sdb:CreateDomain",
                    "sdb:DomainMetadata",
                    "sdb:GetAttributes",
                    "sdb:PutAttributes",
                    "sdb:DeleteAttributes",
                    "sdb:Select",
                ],
                resources=[identity_domains_arn],
            )
        )

        # Issued credentials are this role's session narrowed by the per-user
        # session policy rendered from lambda/tvm_policy.json.
        issuer_role = iam.Role(
            self,
            "TvmIssuerRole",
            assumed_by=iam.ArnPrincipal(lambda_execution_role.role_arn).with_session_tags(),
            max_session_duration=Duration.hours(1),
            inline_policies={
                "IssuedUserData": iam.PolicyDocument(
                    statements=[
                        iam.PolicyStatement(
                            effect=iam.Effect.DENY,
                            actions=["sdb:*"],
                            resources=[identity_domains_arn],
                        ),
                        iam.PolicyStatement(
                            actions=["sdb:*"],
                            resources=[f"{sdb_domain_arn_base}/*"],
                        ),
                    ]
                )
            },
        )
        lambda_execution_role.add_to_policy(
            iam.PolicyStatement(
                actions=["sts:AssumeRole", "sts:TagSession"],
                resources=[issuer_role.role_arn],
            )
        )

        tvm_env = {
            "TVM_APP_NAME": app_name,
            "TVM_DOMAIN_PREFIX": domain_prefix,
            "TVM_ACCOUNT_ID": Aws.ACCOUNT_ID,
            "TVM_SDB_REGION": sdb_region,
            "TVM_SESSION_DURATION_SECONDS": str(session_duration_seconds),
            "ISSUER_ROLE_ARN": issuer_role.role_arn,
            "TVM_REGISTER_SUCCESS_HINT": os.getenv("TVM_REGISTER_SUCCESS_HINT", "/success"),
            "TVM_REGISTER_ERROR_HINT": os.getenv("TVM_REGISTER_ERROR_HINT", "/error"),
            "SCHEMA_VERSION": schema_version,
        }

        functions: dict[str, _lambda.Function] = {}
        for logical_id, handler in (
            ("GetTokenHandler", "get_token_handler.handler"),
            ("LoginHandler", "login_handler.handler"),
            ("RegisterUserHandler", "register_user_handler.handler"),
        ):
            fn = _lambda.Function(
                self,
                logical_id,
                runtime=_lambda.Runtime.PYTHON_3_12,
                handler=handler,
                code=_lambda.Code.from_asset("lambda"),
                timeout=Duration.seconds(10),
                role=lambda_execution_role,
                environment=tvm_env,
            )
            logs.LogGroup(
                self,
                f"{logical_id}LogGroup",
                log_group_name=f"/aws/lambda/{fn.function_name}",
                retention=logs.RetentionDays.ONE_WEEK,
                removal_policy=stateful_removal_policy,
            )
            functions[logical_id] = fn

        access_log_group = logs.LogGroup(
            self,
            "ApiAccessLogGroup",
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=stateful_removal_policy,
        )

        rest_api = apigw.RestApi(
            self,
            "TokenVendingApi",
            rest_api_name=f"{name_prefix}-api",
            deploy_options=apigw.StageOptions(
                stage_name=stage_name,
                access_log_destination=apigw.LogGroupLogDestination(access_log_group),
                # Standard fields only; query strings carry signatures.
                access_log_format=apigw.AccessLogFormat.json_with_standard_fields(
                    caller=False,
                    http_method=True,
                    ip=True,
                    protocol=True,
                    request_time=True,
                    resource_path=True,
                    response_length=True,
                    status=True,
                    user=False,
                ),
                throttling_rate_limit=20,
                throttling_burst_limit=40,
            ),
            cloud_watch_role=True,
        )

        gettoken = rest_api.root.add_resource("gettoken")
        login = rest_api.root.add_resource("login")
        registeruser = rest_api.root.add_resource("registeruser")

        # Callers authenticate inside the handlers with signed requests.
        get_token_integration = apigw.LambdaIntegration(functions["GetTokenHandler"])
        login_integration = apigw.LambdaIntegration(functions["LoginHandler"])
        for method in ("GET", "POST"):
            gettoken.add_method(
                method,
                get_token_integration,
                authorization_type=apigw.AuthorizationType.NONE,
            )
            login.add_method(
                method,
                login_integration,
                authorization_type=apigw.AuthorizationType.NONE,
            )
        registeruser.add_method(
            "POST",
            apigw.LambdaIntegration(functions["RegisterUserHandler"]),
            authorization_type=apigw.AuthorizationType.NONE,
        )

        CfnOutput(
            self,
            "TokenVendingInvokeUrl",
            value=rest_api.url,
            description="Base URL for /gettoken, /login and /registeruser.",
        )
        CfnOutput(
            self,
            "IssuerRoleArn",
            value=issuer_role.role_arn,
            description="Role whose sessions back issued credentials.",
        )
        CfnOutput(
            self,
            "UsersDomainName",
            value=f"{domain_prefix}_{app_name}_USERS",
            description="SimpleDB users domain.",
        )
        CfnOutput(
            self,
            "DevicesDomainName",
            value=f"{domain_prefix}_{app_name}_DEVICES",
            description="SimpleDB devices domain.",
        )
