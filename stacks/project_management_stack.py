import os

from aws_cdk import (
    CfnOutput,
    Duration,
    RemovalPolicy,
    Stack,
    aws_apigateway as apigw,
    aws_cognito as cognito,
    aws_dynamodb as ddb,
    aws_lambda as _lambda,
    aws_logs as logs,
)
from constructs import Construct


class ProjectManagementStack(Stack):
    def __init__(self, scope: Construct, construct_id: str, **kwargs) -> None:
        super().__init__(scope, construct_id, **kwargs)

        # Used for API stage name and to help avoid naming collisions within an account+region.
        stage_name = os.getenv("STAGE", "prod")
        data_retention_mode = os.getenv("DATA_RETENTION_MODE", "destroy").strip().lower()
        if data_retention_mode not in {"destroy", "retain"}:
            raise ValueError(
                "DATA_RETENTION_MODE must be 'destroy' or 'retain' (case-insensitive)"
            )
        # For production deployments, set DATA_RETENTION_MODE=retain.
        stateful_removal_policy = (
            RemovalPolicy.DESTROY
            if data_retention_mode == "destroy"
            else RemovalPolicy.RETAIN
        )
        allowed_email_domains = [
            d.strip().lower()
            for d in (os.getenv("ALLOWED_EMAIL_DOMAINS") or "").split(",")
            if d.strip()
        ]
        if not allowed_email_domains:
            raise ValueError("ALLOWED_EMAIL_DOMAINS must list at least one email domain")
        conditional_writes = (os.getenv("CONDITIONAL_WRITES") or "").strip().lower() in {
            "1",
            "true",
            "yes",
            "on",
        }
        schema_version = "2026-10-01"

        name_prefix = f"{construct_id}-{stage_name}"

        table = ddb.Table(
            self,
            "ProjectManagementTable",
            partition_key=ddb.Attribute(name="PK", type=ddb.AttributeType.STRING),
            sort_key=ddb.Attribute(name="SK", type=ddb.AttributeType.STRING),
            billing_mode=ddb.BillingMode.PAY_PER_REQUEST,
            point_in_time_recovery=True,
            stream=ddb.StreamViewType.NEW_AND_OLD_IMAGES,
            removal_policy=stateful_removal_policy,
        )
        # Entities of one type within a domain, ordered by createdAt.
        table.add_global_secondary_index(
            index_name="GSI1",
            partition_key=ddb.Attribute(name="GSI1PK", type=ddb.AttributeType.STRING),
            sort_key=ddb.Attribute(name="GSI1SK", type=ddb.AttributeType.STRING),
            projection_type=ddb.ProjectionType.ALL,
        )
        table.add_global_secondary_index(
            index_name="DomainIndex",
            partition_key=ddb.Attribute(name="domain", type=ddb.AttributeType.STRING),
            sort_key=ddb.Attribute(name="createdAt", type=ddb.AttributeType.STRING),
            projection_type=ddb.ProjectionType.ALL,
        )

        pre_signup_fn = _lambda.Function(
            self,
            "PreSignUpDomainCheck",
            runtime=_lambda.Runtime.PYTHON_3_12,
            handler="pre_signup_domain_check.handler",
            code=_lambda.Code.from_asset("lambda"),
            timeout=Duration.seconds(5),
            environment={
                "ALLOWED_EMAIL_DOMAINS": ",".join(allowed_email_domains),
            },
        )

        user_pool = cognito.UserPool(
            self,
            "ProjectManagementUserPool",
            user_pool_name=f"{name_prefix}-users",
            self_sign_up_enabled=True,
            sign_in_aliases=cognito.SignInAliases(email=True),
            auto_verify=cognito.AutoVerifiedAttrs(email=True),
            user_verification=cognito.UserVerificationConfig(
                email_style=cognito.VerificationEmailStyle.CODE,
            ),
            standard_attributes=cognito.StandardAttributes(
                email=cognito.StandardAttribute(required=True, mutable=True),
            ),
            custom_attributes={
                "domain": cognito.StringAttribute(min_len=1, max_len=64, mutable=True),
            },
            account_recovery=cognito.AccountRecovery.EMAIL_ONLY,
            lambda_triggers=cognito.UserPoolTriggers(pre_sign_up=pre_signup_fn),
            removal_policy=stateful_removal_policy,
        )

        user_pool_client = user_pool.add_client(
            "ProjectManagementUserPoolClient",
            auth_flows=cognito.AuthFlow(user_password=True, user_srp=True),
            generate_secret=False,
        )

        api_env = {
            "TABLE_NAME": table.table_name,
            "SCHEMA_VERSION": schema_version,
            "CONDITIONAL_WRITES": "true" if conditional_writes else "false",
        }
        api_functions: dict[str, _lambda.Function] = {}
        for logical_id, module in (
            ("TasksHandler", "tasks_handler"),
            ("TicketsHandler", "tickets_handler"),
            ("UsersHandler", "users_handler"),
        ):
            fn = _lambda.Function(
                self,
                logical_id,
                runtime=_lambda.Runtime.PYTHON_3_12,
                handler=f"{module}.handler",
                code=_lambda.Code.from_asset("lambda"),
                timeout=Duration.seconds(20),
                environment=dict(api_env),
            )
            table.grant_read_write_data(fn)
            api_functions[module] = fn

        access_log_group = logs.LogGroup(
            self,
            "ApiAccessLogGroup",
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=stateful_removal_policy,
        )

        rest_api = apigw.RestApi(
            self,
            "ProjectManagementApi",
            rest_api_name=f"{name_prefix}-api",
            deploy_options=apigw.StageOptions(
                stage_name=stage_name,
                access_log_destination=apigw.LogGroupLogDestination(access_log_group),
                # Standard fields only; do not log headers (e.g., Authorization).
                access_log_format=apigw.AccessLogFormat.json_with_standard_fields(
                    caller=True,
                    http_method=True,
                    ip=True,
                    protocol=True,
                    request_time=True,
                    resource_path=True,
                    response_length=True,
                    status=True,
                    user=True,
                ),
            ),
            default_cors_preflight_options=apigw.CorsOptions(
                allow_origins=apigw.Cors.ALL_ORIGINS,
                allow_methods=apigw.Cors.ALL_METHODS,
                allow_headers=["Content-Type", "Authorization"],
            ),
            # Needed for API Gateway to push logs to CloudWatch Logs.
            cloud_watch_role=True,
        )

        authorizer = apigw.CognitoUserPoolsAuthorizer(
            self,
            "ProjectManagementCognitoAuthorizer",
            cognito_user_pools=[user_pool],
        )

        def _add(resource: apigw.IResource, method: str, fn: _lambda.Function) -> None:
            resource.add_method(
                method,
                apigw.LambdaIntegration(fn),
                authorization_type=apigw.AuthorizationType.COGNITO,
                authorizer=authorizer,
            )

        tasks_fn = api_functions["tasks_handler"]
        tasks = rest_api.root.add_resource("tasks")
        task = tasks.add_resource("{id}")
        task_comments = task.add_resource("comments")
        task_link = task.add_resource("link")
        task_link_target = task_link.add_resource("{linkedTaskId}")
        _add(tasks, "GET", tasks_fn)
        _add(tasks, "POST", tasks_fn)
        _add(task, "GET", tasks_fn)
        _add(task, "PUT", tasks_fn)
        _add(task, "DELETE", tasks_fn)
        _add(task_comments, "POST", tasks_fn)
        _add(task_link, "POST", tasks_fn)
        _add(task_link_target, "DELETE", tasks_fn)

        for root_name, module in (("tickets", "tickets_handler"), ("users", "users_handler")):
            fn = api_functions[module]
            collection = rest_api.root.add_resource(root_name)
            member = collection.add_resource("{id}")
            _add(collection, "GET", fn)
            _add(collection, "POST", fn)
            _add(member, "GET", fn)
            _add(member, "PUT", fn)
            _add(member, "DELETE", fn)

        CfnOutput(
            self,
            "TableName",
            value=table.table_name,
            description="Single table holding tasks, tickets and user profiles.",
        )
        CfnOutput(
            self,
            "TableArn",
            value=table.table_arn,
        )
        CfnOutput(
            self,
            "ApiUrl",
            value=rest_api.url,
            description="Base invoke URL for the project management API.",
        )
        CfnOutput(
            self,
            "UserPoolId",
            value=user_pool.user_pool_id,
        )
        CfnOutput(
            self,
            "UserPoolClientId",
            value=user_pool_client.user_pool_client_id,
        )
        CfnOutput(
            self,
            "AllowedEmailDomains",
            value=",".join(allowed_email_domains),
            description="Email domains accepted by the pre-sign-up trigger.",
        )
