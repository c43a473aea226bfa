# cli.py
import json
import logging
import sys

import click

from database.nosql_adapter import NoSQLAdapter

from .config.settings import get_settings
from .controller import Controller
from .errors import ControllerError

logger = logging.getLogger(__name__)


def _controller() -> Controller:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    return Controller.from_settings(settings)


def _fail(e: Exception):
    click.echo(f"❌ {e}", err=True)
    sys.exit(1)


@click.group()
def cli():
    """Deploy services to ECS and keep the cluster fleet sized"""
    pass


@cli.command()
@click.argument("service_name")
@click.argument("spec_file", type=click.File("r"))
@click.option("--wait/--no-wait", default=True, help="Block until the rollout verdict is written")
def deploy(service_name, spec_file, wait):
    """Deploy SERVICE_NAME using the JSON spec in SPEC_FILE"""
    controller = _controller()
    try:
        result = controller.deploy(service_name, json.load(spec_file))
    except (ControllerError, json.JSONDecodeError) as e:
        _fail(e)
    click.echo(f"Deploying {result.service_name} to {result.cluster_name}")
    click.echo(f"  Task definition: {result.task_definition_arn}")
    click.echo(f"  Deployment time: {result.deployment_time}")
    if wait:
        controller.registry.join()
        status = controller.get_deployment_status(service_name, result.deployment_time)
        click.echo(f"  Status: {status.status.value}" + (f" ({status.deploy_error})" if status.deploy_error else ""))


@cli.command()
@click.argument("service_name")
@click.argument("time")
@click.option("--wait/--no-wait", default=True)
def redeploy(service_name, time, wait):
    """Deploy the spec of an earlier deployment again"""
    controller = _controller()
    try:
        result = controller.redeploy(service_name, time)
    except ControllerError as e:
        _fail(e)
    click.echo(f"Redeploying {result.service_name}: {result.deployment_time}")
    if wait:
        controller.registry.join()


@cli.command()
@click.argument("service_name")
def rollback(service_name):
    """Re-apply the last successful task definition of a service"""
    try:
        task_definition_arn = _controller().rollback(service_name)
    except ControllerError as e:
        _fail(e)
    click.echo(f"Rolled back {service_name} to {task_definition_arn}")


@cli.command()
@click.argument("service_name")
@click.argument("time")
def status(service_name, time):
    """Show the status of one deployment"""
    try:
        result = _controller().get_deployment_status(service_name, time)
    except ControllerError as e:
        _fail(e)
    click.echo(result.model_dump_json(indent=2))


@cli.command()
@click.option("--service", "service_name", default=None, help="Only deployments of this service")
@click.option("--limit", default=20, show_default=True)
def deploys(service_name, limit):
    """List recent deployments"""
    controller = _controller()
    if service_name:
        records = controller.get_deploys_for_service(service_name, limit=limit)
    else:
        records = controller.get_deploys(limit=limit)
    for record in records:
        line = f"{record.time}  {record.service_name:<30} {record.status.value:<8} {record.task_definition_arn}"
        if record.deploy_error:
            line += f"  ({record.deploy_error})"
        click.echo(line)


@cli.command()
def services():
    """List managed services"""
    for service in _controller().get_services():
        click.echo(f"{service.service_name:<30} {service.cluster_name:<20} "
                   f"cpu {service.cpu_reservation}/{service.cpu_limit} "
                   f"memory {service.memory_reservation}/{service.memory_limit}")


@cli.command()
@click.argument("service_name")
@click.argument("desired_count", type=int)
def scale(service_name, desired_count):
    """Set the task count of a service"""
    try:
        _controller().scale_service(service_name, desired_count)
    except ControllerError as e:
        _fail(e)
    click.echo(f"Scaled {service_name} to {desired_count}")


@cli.command()
@click.argument("service_name", required=False)
def describe(service_name):
    """Show the live state of one service, or of all services"""
    controller = _controller()
    try:
        if service_name:
            running_services = [controller.describe_service(service_name)]
        else:
            running_services = controller.describe_services()
    except ControllerError as e:
        _fail(e)
    for rs in running_services:
        click.echo(f"{rs.service_name:<30} {rs.status:<10} "
                   f"desired {rs.desired_count} running {rs.running_count} pending {rs.pending_count}")
        for d in rs.deployments:
            click.echo(f"  {d.status:<8} {d.task_definition} ({d.running_count}/{d.desired_count})")
        for task in rs.tasks:
            click.echo(f"  task {task.task_arn} {task.last_status}")


@cli.command()
@click.argument("service_name")
def tasks(service_name):
    """List running and stopped tasks of a service"""
    try:
        running_tasks = _controller().list_tasks(service_name)
    except ControllerError as e:
        _fail(e)
    for task in running_tasks:
        click.echo(f"{task.task_arn}  {task.last_status:<10} {task.task_definition_arn}")


@cli.command()
@click.argument("service_name")
def task_definition(service_name):
    """Show the task definition a service currently runs"""
    try:
        definition = _controller().describe_task_definition(service_name)
    except ControllerError as e:
        _fail(e)
    click.echo(f"{definition.family}:{definition.revision}")
    for container in definition.container_definitions:
        click.echo(f"  {container.name}" + (" (essential)" if container.essential else ""))


@cli.command()
@click.argument("service_name")
@click.confirmation_option(prompt="Delete the service and its target group?")
def delete(service_name):
    """Delete a service, its routing rules and its target group"""
    try:
        _controller().delete_service(service_name)
    except ControllerError as e:
        _fail(e)
    click.echo(f"Deleted {service_name}")


@cli.command()
@click.argument("event_file", type=click.File("r"))
def process_event(event_file):
    """Process one ECS state change or lifecycle event from a JSON file"""
    controller = _controller()
    try:
        result = controller.process_event(event_file.read())
    except ControllerError as e:
        _fail(e)
    click.echo(f"Processed event: {result}")
    controller.registry.join()


@cli.command()
@click.option("--queue-url", default=None, help="Overrides SQS_QUEUE_URL")
def worker(queue_url):
    """Consume platform events from SQS"""
    from .worker import EventWorker

    EventWorker(_controller(), queue_url=queue_url).run()


@cli.command()
def resume():
    """Re-attach deployment and drain watchers, then wait for them"""
    controller = _controller()
    counts = controller.resume()
    click.echo(f"Resumed {counts['deployments']} deployment and {counts['drains']} drain watchers")
    controller.registry.join()


@cli.command()
def show_config():
    """Show current configuration"""
    settings = get_settings()

    print("Current Configuration:")
    print(f"  Deployment Mode: {settings.deployment_mode}")
    print(f"  AWS Region: {settings.aws_region}")
    print(f"  AWS Endpoint: {settings.aws_endpoint_url}")
    print(f"  Database: {settings.db_path}")
    print(f"  ECS Service Role: {settings.ecs_service_role}")
    print(f"  Paramstore Enabled: {settings.paramstore_enabled}")
    print(f"  CloudWatch Logs Enabled: {settings.cloudwatch_logs_enabled}")
    print(f"  Cache TTL: {settings.cache_ttl_seconds}s")
    print(f"  Scaling Cooldown: {settings.scaling_cooldown_seconds}s")
    print(f"  SQS Queue URL: {settings.sqs_queue_url}")


@cli.command()
def init_db():
    """Create the document collections"""
    settings = get_settings()
    NoSQLAdapter(settings.db_path).init_collections()
    click.echo(f"✅ Initialized {settings.db_path}")


if __name__ == "__main__":
    cli()
