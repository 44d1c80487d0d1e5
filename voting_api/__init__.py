import os
import time
import click
from flask import Flask
from flask_cors import CORS

from voting_api.extensions import db, migrate, init_db
from voting_api.common.errors import register_error_handlers
from voting_api.models import load_all

from datetime import date, datetime, timedelta


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def create_app(config_object: str | None = None):
    app = Flask(__name__)

    # Basic inline config (defaults)
    app.config["SQLALCHEMY_DATABASE_URI"] = os.getenv(
        "DATABASE_URL",
        "postgresql+psycopg://postgres@127.0.0.1:5432/voting_dev",
    )
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

    # Voting engine tunables
    app.config["VOTING_REQUIRED_TENURE_DAYS"] = int(os.getenv("VOTING_REQUIRED_TENURE_DAYS", 20))
    app.config["VOTING_LATE_COUNT_THRESHOLD"] = int(os.getenv("VOTING_LATE_COUNT_THRESHOLD", 3))
    app.config["VOTING_LATE_MINUTES_THRESHOLD"] = int(os.getenv("VOTING_LATE_MINUTES_THRESHOLD", 10))
    app.config["VOTING_PROMOTION_DURATION_DAYS"] = int(os.getenv("VOTING_PROMOTION_DURATION_DAYS", 5))
    app.config["VOTING_DEMOTION_DURATION_DAYS"] = int(os.getenv("VOTING_DEMOTION_DURATION_DAYS", 3))
    app.config["VOTING_PROMOTION_PASS_THRESHOLD"] = float(os.getenv("VOTING_PROMOTION_PASS_THRESHOLD", 50))
    app.config["VOTING_DEMOTION_PASS_THRESHOLD"] = float(os.getenv("VOTING_DEMOTION_PASS_THRESHOLD", 30))
    app.config["VOTING_PROMOTION_PRIORITY"] = int(os.getenv("VOTING_PROMOTION_PRIORITY", 5))
    app.config["VOTING_DEMOTION_PRIORITY"] = int(os.getenv("VOTING_DEMOTION_PRIORITY", 10))
    app.config["VOTING_BUFFER_PERIOD_DAYS"] = int(os.getenv("VOTING_BUFFER_PERIOD_DAYS", 30))
    app.config["VOTING_MAX_MODIFICATIONS"] = int(os.getenv("VOTING_MAX_MODIFICATIONS", 3))
    app.config["VOTING_FINGERPRINT_SALT"] = os.getenv("VOTING_FINGERPRINT_SALT", "")
    app.config["VOTING_WORK_START"] = os.getenv("VOTING_WORK_START", "09:00")
    app.config["VOTING_POSITION_CHANGE_DELAY_HOURS"] = int(os.getenv("VOTING_POSITION_CHANGE_DELAY_HOURS", 0))
    app.config["VOTING_HEALTH_EXPIRED_BACKLOG"] = int(os.getenv("VOTING_HEALTH_EXPIRED_BACKLOG", 5))
    app.config["VOTING_SCHEDULER_TIMEZONE"] = os.getenv("VOTING_SCHEDULER_TIMEZONE", "Asia/Taipei")
    app.config["VOTING_SCHEDULER_ENABLED"] = _env_bool("VOTING_SCHEDULER_ENABLED")

    # Try loading external config, but don't crash if missing
    if config_object:
        try:
            app.config.from_object(config_object)
        except Exception as e:
            # Just log and continue with defaults
            app.logger.warning("Could not import config object %r: %s", config_object, e)

    # CORS (dev)
    CORS(app, resources={r"/api/*": {"origins": "*"}})

    # Extensions
    init_db(app)
    register_error_handlers(app)
    migrate.init_app(app, db)

    # Ensure models are loaded so metadata is complete
    with app.app_context():
        load_all()

    # Blueprints
    from voting_api.blueprints.health import bp as health_bp
    from voting_api.blueprints.campaigns import bp as campaigns_bp
    from voting_api.blueprints.voting import bp as voting_bp
    from voting_api.blueprints.attendance_stats import bp as attendance_stats_bp
    from voting_api.blueprints.scheduled_jobs import bp as scheduled_jobs_bp

    app.register_blueprint(health_bp)
    app.register_blueprint(campaigns_bp)
    app.register_blueprint(voting_bp)
    app.register_blueprint(attendance_stats_bp)
    app.register_blueprint(scheduled_jobs_bp)

    # Engine + scheduled jobs
    from voting_api.services.engine import init_engine
    from voting_api.jobs.orchestrator import init_jobs

    init_engine(app)
    orchestrator = init_jobs(app)

    # ----------------- CLI COMMANDS -----------------

    @app.cli.command("seed-demo")
    @click.option("--interns", default=3, show_default=True, type=int)
    @click.option("--staff", default=8, show_default=True, type=int)
    def seed_demo(interns: int, staff: int):
        """Seed a demo store: interns past tenure, staff, and one manager."""
        from voting_api.models.employee import Employee

        def ensure_employee(code: str, name: str, position: str, hired_days_ago: int, store: str = "STORE-01"):
            emp = Employee.query.filter_by(code=code).first()
            if emp:
                return False
            db.session.add(Employee(
                code=code,
                name=name,
                position=position,
                hire_date=date.today() - timedelta(days=hired_days_ago),
                position_start_date=datetime.utcnow() - timedelta(days=hired_days_ago),
                current_store=store,
                status="active",
            ))
            return True

        created = 0
        for i in range(1, interns + 1):
            created += ensure_employee(f"INT-{i:03d}", f"Intern {i}", "intern", 25 + i)
        for i in range(1, staff + 1):
            created += ensure_employee(f"STF-{i:03d}", f"Staff {i}", "staff", 200 + i * 10)
        created += ensure_employee("MGR-001", "Store Manager", "manager", 900)
        db.session.commit()

        click.echo(f"Seeded/ensured demo employees ({created} created)")

    @app.cli.command("jobs")
    def list_jobs():
        """List registered jobs and their run counters."""
        for row in orchestrator.status()["jobs"]:
            click.echo(
                f"{row['name']:<28} {row['cadence']:<40} "
                f"last={row['last_status'] or '-'} ok={row['success_count']} "
                f"err={row['error_count']} skipped={row['skipped_count']}"
            )

    @app.cli.command("run-job")
    @click.argument("name")
    def run_job(name):
        """Run one registered job now."""
        from voting_api.common.errors import JobNotFound

        try:
            res = orchestrator.run_now(name)
        except JobNotFound:
            raise click.ClickException(f"Unknown job {name!r}; try one of: {', '.join(orchestrator.names)}")
        click.echo(f"{name}: {res['status']}")
        if res["status"] == "success":
            click.echo(res.get("result"))
        elif res["status"] == "error":
            click.echo(res.get("error"), err=True)

    @app.cli.command("scheduler")
    def run_scheduler():
        """Run the job scheduler in the foreground until interrupted."""
        orchestrator.start()
        click.echo(f"Scheduler running ({len(orchestrator.names)} jobs). Ctrl+C to stop.")
        try:
            while True:
                time.sleep(1)
        except (KeyboardInterrupt, SystemExit):
            orchestrator.shutdown()

    return app
