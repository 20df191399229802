"""
Command Line Interface for the Certificate Pipeline.
"""

import shutil
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
import uvicorn
from rich import print as rprint
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ..certificates import CertificateOperations
from ..config import get_settings
from ..db.base import create_tables, get_session_local
from ..errors import CertificatePipelineError
from ..worker.state import student_status_label

app = typer.Typer(help="Certificate Pipeline - certificate and transcript generation")
templates_app = typer.Typer(help="Manage certificate and transcript templates")
app.add_typer(templates_app, name="templates")
console = Console()

STATUS_EMOJI = {
    "pending": "🟡",
    "generating": "🔄",
    "ready": "🟢",
    "failed": "🔴",
    "delivered": "✅",
}


@contextmanager
def operations() -> Iterator[CertificateOperations]:
    """Operations bound to a fresh session; pipeline errors exit with code 1."""
    create_tables()
    db = get_session_local()()
    try:
        yield CertificateOperations(db, actor_id="cli")
    except CertificatePipelineError as e:
        console.print(f"❌ [{e.code}] {e.message}")
        raise typer.Exit(code=1)
    finally:
        db.close()


def _print_certificate(certificate) -> None:
    emoji = STATUS_EMOJI.get(certificate.status, "❓")
    lines = [
        f"Claim: {certificate.claim_id}",
        f"Registration number: {certificate.registration_number or '-'}",
        f"Status: {emoji} {certificate.status} ({student_status_label(certificate.status)})",
        f"Attempts: {certificate.attempt_count}",
    ]
    if certificate.certificate_distributable_path:
        lines.append(f"Certificate: {certificate.certificate_distributable_path}")
    if certificate.transcript_distributable_path:
        lines.append(f"Transcript: {certificate.transcript_distributable_path}")
    if certificate.delivered_at:
        lines.append(f"Delivered: {certificate.delivered_at.isoformat()} by {certificate.delivered_by or '-'}")
    if certificate.last_error:
        lines.append(f"Last error: {certificate.last_error}")
    rprint(Panel.fit("\n".join(lines), title=f"Certificate {certificate.id}", style="bold blue"))


@templates_app.command("upload")
def templates_upload(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="DOCX template file"),
    kind: str = typer.Option(..., help="certificate or transcript"),
    course_kind: str = typer.Option(..., help="cpd or qualification"),
    name: Optional[str] = typer.Option(None, help="Display name (default: file name)"),
    activate: bool = typer.Option(False, help="Activate right after upload"),
):
    """Upload a DOCX template."""
    with operations() as ops:
        template = ops.upload_template(kind, course_kind, path.name, path.read_bytes(), name=name)
        console.print(f"✅ Uploaded template {template.id} ({template.name})")
        if activate:
            ops.activate_template(template.id)
            console.print(f"✅ Activated template {template.id}")


@templates_app.command("activate")
def templates_activate(template_id: int = typer.Argument(..., help="Template ID")):
    """Activate a template, deactivating the current one for its kind."""
    with operations() as ops:
        template = ops.activate_template(template_id)
        console.print(
            f"✅ Template {template.id} is now the active {template.kind} template "
            f"for {template.course_kind} courses"
        )


@templates_app.command("list")
def templates_list(
    kind: Optional[str] = typer.Option(None, help="Filter by kind"),
    course_kind: Optional[str] = typer.Option(None, help="Filter by course kind"),
):
    """List uploaded templates."""
    with operations() as ops:
        templates = ops.list_templates(kind, course_kind)

        if not templates:
            console.print("No templates uploaded")
            return

        table = Table(title="Templates", show_header=True, header_style="bold cyan")
        table.add_column("ID", style="yellow")
        table.add_column("Kind")
        table.add_column("Course kind")
        table.add_column("Name")
        table.add_column("Active", style="green")
        table.add_column("Uploaded")
        for t in templates:
            table.add_row(
                str(t.id),
                t.kind,
                t.course_kind,
                t.name,
                "🟢" if t.is_active else "",
                t.uploaded_at.isoformat() if t.uploaded_at else "",
            )
        console.print(table)


@app.command()
def generate(claim_id: int = typer.Argument(..., help="Claim ID")):
    """Generate a claim's certificate and transcript now."""
    with operations() as ops:
        _print_certificate(ops.trigger_generation(claim_id))


@app.command()
def retry(certificate_id: int = typer.Argument(..., help="Generated certificate ID")):
    """Retry a failed or partially generated certificate."""
    with operations() as ops:
        _print_certificate(ops.retry_generation(certificate_id))


@app.command()
def deliver(certificate_id: int = typer.Argument(..., help="Generated certificate ID")):
    """Deliver a ready certificate to the student."""
    with operations() as ops:
        _print_certificate(ops.deliver(certificate_id))


@app.command("deliver-all")
def deliver_all(certificate_ids: List[int] = typer.Argument(..., help="Generated certificate IDs")):
    """Deliver several ready certificates, reporting the ones that cannot be."""
    with operations() as ops:
        outcome = ops.deliver_all(certificate_ids)
        for certificate in outcome["results"]:
            console.print(f"✅ {certificate.id} {certificate.registration_number}")
        for error in outcome["errors"]:
            console.print(f"❌ {error['certificate_id']} [{error['code']}] {error['message']}")
        console.print(f"Delivered {outcome['delivered']}, failed {outcome['failed']}")
        if outcome["failed"]:
            raise typer.Exit(code=1)


@app.command()
def delivered(student_id: int = typer.Argument(..., help="Student ID")):
    """List a student's delivered certificates, most recent first."""
    with operations() as ops:
        certificates = ops.list_delivered_for_student(student_id)
        if not certificates:
            console.print(f"No delivered certificates for student {student_id}")
            return

        table = Table(title=f"Delivered to student {student_id}", show_header=True, header_style="bold green")
        table.add_column("ID", style="cyan")
        table.add_column("Registration no.", style="yellow")
        table.add_column("Course")
        table.add_column("Delivered")
        table.add_column("By")
        for c in certificates:
            table.add_row(
                str(c.id),
                c.registration_number or "-",
                str(c.course_id),
                c.delivered_at.isoformat() if c.delivered_at else "",
                c.delivered_by or "",
            )
        console.print(table)


@app.command("download-source")
def download_source(
    certificate_id: int = typer.Argument(..., help="Generated certificate ID"),
    kind: str = typer.Option("certificate", help="certificate or transcript"),
    output: Optional[Path] = typer.Option(None, help="Target file (default: ./<document name>.docx)"),
):
    """Save the filled DOCX a document was converted from."""
    with operations() as ops:
        filename, _, stream = ops.download_source(certificate_id, kind)
        target = output or Path(filename)
        with stream, open(target, "wb") as fh:
            shutil.copyfileobj(stream, fh)
        console.print(f"✅ Saved {target}")


@app.command()
def reconvert(
    certificate_id: int = typer.Argument(..., help="Generated certificate ID"),
    kind: str = typer.Option("certificate", help="certificate or transcript"),
):
    """Convert a ready or delivered document's DOCX to PDF again."""
    with operations() as ops:
        _print_certificate(ops.reconvert_document(certificate_id, kind))


@app.command()
def history(certificate_id: int = typer.Argument(..., help="Generated certificate ID")):
    """Show the recorded events of a certificate, newest first."""
    with operations() as ops:
        table = Table(title=f"Certificate {certificate_id} history", show_header=True, header_style="bold cyan")
        table.add_column("When")
        table.add_column("Action", no_wrap=True)
        table.add_column("Actor")
        table.add_column("Note")
        for entry in ops.certificate_history(certificate_id):
            table.add_row(
                entry.ts.isoformat() if entry.ts else "",
                entry.action,
                f"{entry.actor_id} ({entry.actor_kind})",
                entry.note or "",
            )
        console.print(table)


@app.command("list")
def list_certificates(
    status: Optional[str] = typer.Option(None, help="Filter by status"),
    limit: int = typer.Option(50, help="Maximum rows"),
):
    """List generated certificates."""
    with operations() as ops:
        certificates = ops.list_generated(status=status, limit=limit)

        table = Table(title="Generated Certificates", show_header=True, header_style="bold magenta")
        table.add_column("ID", style="cyan")
        table.add_column("Claim")
        table.add_column("Registration no.", style="yellow")
        table.add_column("Status")
        table.add_column("Attempts")
        table.add_column("Last error")
        for c in certificates:
            table.add_row(
                str(c.id),
                str(c.claim_id),
                c.registration_number or "-",
                f"{STATUS_EMOJI.get(c.status, '❓')} {c.status}",
                str(c.attempt_count),
                (c.last_error or "")[:60],
            )
        console.print(table)

        counts = ops.queue_status()
        console.print(
            " ".join(f"{name}={count}" for name, count in counts.items())
        )


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, help="Port to run the API server on"),
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
    dev: bool = typer.Option(False, help="Reload on code changes"),
):
    """Start the HTTP API."""
    settings = get_settings()
    rprint(Panel.fit("🎓 Starting Certificate Pipeline API", style="bold blue"))
    uvicorn.run(
        "certificate_pipeline.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=dev,
    )


@app.command()
def worker(
    poll_interval: Optional[int] = typer.Option(None, help="Seconds between polls"),
    claim_limit: Optional[int] = typer.Option(None, help="Rows claimed per poll"),
    concurrency: Optional[int] = typer.Option(None, help="Rows generated in parallel"),
):
    """Run a generation worker until interrupted."""
    from ..worker.loop import run_worker

    rprint(Panel.fit("🛠️ Starting Certificate Worker", style="bold blue"))
    run_worker(poll_interval=poll_interval, claim_limit=claim_limit, concurrency=concurrency)


def main():
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
