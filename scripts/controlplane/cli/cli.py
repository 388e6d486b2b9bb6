#!/usr/bin/env python3
# Ticket: 0091_workflow_control_plane
# Design: DESIGN.md
"""
Control Plane CLI

Human-facing command-line interface for feature lifecycle state, blockers,
gates, locks, learnings, propagation and evaluation.

Usage:
    # All commands auto-detect .controlplane/config.yaml from the current
    # directory or accept --db and --project-root overrides.

    controlplane list                          # list features
    controlplane status <feature-id>           # feature status and counts
    controlplane create <id> <name> --complexity 2
    controlplane transition <feature-id> <phase> [--escalate]
    controlplane complete <feature-id>
    controlplane cancel <feature-id> --reason "..."

    controlplane block <feature-id> <type> <severity> <title>
    controlplane resolve <blocker-id> --notes "..."
    controlplane gate <feature-id> <gate-name> APPROVED|REJECTED

    controlplane locks [--feature <id>]        # active path locks
    controlplane conflicts [--feature <id>]    # feature conflicts

    controlplane learnings [--feature <id>]    # current learnings
    controlplane propagation queue|syncs|history

    controlplane eval <feature-id>             # score a feature
    controlplane health --period 7             # system health
    controlplane alerts                        # active alerts
    controlplane ack <alert-id>
    controlplane audit [--feature <id>]
"""

import argparse
import logging
import sys
from pathlib import Path

# Allow running as script or module
_HERE = Path(__file__).parent
sys.path.insert(0, str(_HERE.parent.parent))  # scripts/

from controlplane.engine import (
    audit,
    coordination,
    evaluation,
    features,
    gating,
    knowledge,
    propagation,
)
from controlplane.engine.config import find_project_root, load_config
from controlplane.engine.schema import create_db


def _open_db(args: argparse.Namespace) -> tuple:
    """Open database and load config from args or auto-discovery."""
    project_root = Path(args.project_root) if args.project_root else find_project_root()
    config = load_config(project_root)

    logging.basicConfig(
        level=getattr(logging, (args.log_level or config.log_level).upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )

    db_path = Path(args.db if args.db else config.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = create_db(db_path)
    return conn, config, project_root


def _actor(args: argparse.Namespace, config) -> str:
    return getattr(args, "by", None) or config.default_actor


def _clip(text: str | None, width: int) -> str:
    text = text or ""
    return text if len(text) <= width else text[: width - 3] + "..."


# ---------------------------------------------------------------------------
# Feature commands
# ---------------------------------------------------------------------------


def cmd_list(args: argparse.Namespace) -> int:
    """List features."""
    conn, config, _ = _open_db(args)
    try:
        rows = features.list_features(conn, args.status)
        if not rows:
            print("No features found.")
            return 0

        print(f"\n{'ID':<12} {'Phase':<16} {'Status':<12} {'Tier':<10} {'Name'}")
        print("-" * 80)
        for f in rows:
            print(
                f"{f.id:<12} {f.current_phase.display:<16} {f.status.value:<12} "
                f"{f.severity.value:<10} {_clip(f.name, 36)}"
            )
        print(f"\n{len(rows)} feature(s).")
        return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()


def cmd_status(args: argparse.Namespace) -> int:
    """Show a feature with aggregated counts."""
    conn, config, _ = _open_db(args)
    try:
        status = features.get_feature_status(conn, args.feature_id)
        print(f"\nFeature: {status['id']} {status['name']}")
        print(f"  Phase       : {status['current_phase'].display}")
        print(f"  Status      : {status['status'].value}")
        print(f"  Complexity  : {status['complexity_level']}")
        print(f"  Tier        : {status['severity'].value}")
        print(f"  Transitions : {status['total_transitions']}")
        print(f"  Blockers    : {status['open_blockers']} open / {status['total_blockers']} total")
        print(f"  Gates       : {status['gates_approved']} approved, {status['gates_rejected']} rejected")
        print(f"  Locks       : {status['active_locks']}")
        print(f"  Conflicts   : {status['open_conflicts']} open")
        print(f"  Learnings   : {status['total_learnings']}")
        print(f"  Agent time  : {status['total_duration_ms'] / 60000:.1f} min")

        blockers = gating.list_blockers(conn, args.feature_id, unresolved_only=True)
        if blockers:
            print(f"\nOpen Blockers ({len(blockers)}):")
            for b in blockers:
                print(f"  #{b.id}: [{b.severity.value}] {b.blocker_type.value}: {b.title}")
        return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()


def cmd_create(args: argparse.Namespace) -> int:
    """Register a new feature."""
    conn, config, _ = _open_db(args)
    try:
        feature = features.create_feature(
            conn, args.feature_id, args.name, args.complexity, _actor(args, config),
            severity=args.tier, epic_id=args.epic, parent_feature_id=args.parent,
        )
        print(f"Feature {feature.id} created at phase {feature.current_phase.display}.")
        return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()


def cmd_transition(args: argparse.Namespace) -> int:
    """Move a feature to another phase."""
    conn, config, _ = _open_db(args)
    try:
        move = features.escalate_phase if args.escalate else features.transition_phase
        transition = move(conn, args.feature_id, args.phase, _actor(args, config), args.note)
        print(
            f"Feature {args.feature_id}: {transition.from_phase.display} -> "
            f"{transition.to_phase.display} ({transition.kind.value})"
        )
        return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()


def cmd_complete(args: argparse.Namespace) -> int:
    """Complete a feature and score it."""
    conn, config, _ = _open_db(args)
    try:
        result = features.complete_feature(conn, args.feature_id, _actor(args, config))
        print(f"Feature {args.feature_id} COMPLETE.")
        print(f"  Evaluation : {result['eval_id']}")
        if result["released_locks"]:
            print(f"  Released   : {', '.join(result['released_locks'])}")
        return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()


def cmd_cancel(args: argparse.Namespace) -> int:
    """Cancel a feature."""
    conn, config, _ = _open_db(args)
    try:
        features.cancel_feature(conn, args.feature_id, _actor(args, config), args.reason)
        print(f"Feature {args.feature_id} CANCELLED.")
        return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Blocker and gate commands
# ---------------------------------------------------------------------------


def cmd_block(args: argparse.Namespace) -> int:
    """Open a blocker against a feature."""
    conn, config, _ = _open_db(args)
    try:
        blocker = gating.create_blocker(
            conn, args.feature_id, args.blocker_type, args.severity, args.title,
            _actor(args, config), args.description,
        )
        print(f"Blocker #{blocker.id} opened; feature {args.feature_id} is BLOCKED.")
        return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()


def cmd_resolve(args: argparse.Namespace) -> int:
    """Resolve a blocker."""
    conn, config, _ = _open_db(args)
    try:
        result = gating.resolve_blocker(conn, args.blocker_id, _actor(args, config), args.notes)
        print(f"Blocker #{args.blocker_id} RESOLVED.")
        print(f"  Remaining open : {result['remaining_open']}")
        print(f"  Feature status : {result['feature_status']}")
        return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()


def cmd_gate(args: argparse.Namespace) -> int:
    """Record a quality gate decision."""
    conn, config, _ = _open_db(args)
    try:
        gate = gating.evaluate_gate(
            conn, args.feature_id, args.gate_name, args.decision, _actor(args, config), args.notes,
        )
        print(
            f"Gate '{gate.gate_name}' {gate.status.value} at phase {gate.phase.display} "
            f"(attempt {gate.attempt})."
        )
        return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Coordination commands
# ---------------------------------------------------------------------------


def cmd_locks(args: argparse.Namespace) -> int:
    """Show active path locks."""
    conn, config, _ = _open_db(args)
    try:
        locks = coordination.list_locks(conn, args.feature)
        if not locks:
            print("No active locks.")
            return 0

        print(f"\n{'Feature':<12} {'Kind':<10} {'Holder':<20} {'Acquired':<20} {'Path'}")
        print("-" * 90)
        for lock in locks:
            print(
                f"{lock.feature_id:<12} {lock.kind.value:<10} {_clip(lock.holder, 18):<20} "
                f"{(lock.acquired_at or '')[:19]:<20} {lock.path}"
            )
        return 0
    finally:
        conn.close()


def cmd_conflicts(args: argparse.Namespace) -> int:
    """Show feature conflicts, highest risk first."""
    conn, config, _ = _open_db(args)
    try:
        conflicts = coordination.list_conflicts(conn, args.feature, unresolved_only=not args.all)
        if not conflicts:
            print("No conflicts.")
            return 0

        print(f"\n{'ID':<6} {'Features':<26} {'Risk':<8} {'Status':<12} {'Paths'}")
        print("-" * 90)
        for c in conflicts:
            pair = f"{c.feature_a_id} / {c.feature_b_id}"
            print(
                f"{c.id:<6} {_clip(pair, 24):<26} {c.risk.value:<8} {c.status.value:<12} "
                f"{_clip(', '.join(c.paths), 40)}"
            )
        return 0
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Knowledge commands
# ---------------------------------------------------------------------------


def cmd_learnings(args: argparse.Namespace) -> int:
    """List learnings, highest confidence first."""
    conn, config, _ = _open_db(args)
    try:
        rows = knowledge.list_learnings(conn, args.feature, include_superseded=args.all)
        if not rows:
            print("No learnings found.")
            return 0

        print(f"\n{'ID':<10} {'Conf':<6} {'Iter':<5} {'Category':<18} {'Title'}")
        print("-" * 90)
        for learning in rows:
            marker = " (superseded)" if learning.is_superseded else ""
            print(
                f"{learning.id[:8]:<10} {learning.confidence:<6.2f} {learning.iteration_number:<5} "
                f"{learning.category.value:<18} {_clip(learning.title, 40)}{marker}"
            )
        print(f"\n{len(rows)} learning(s).")
        return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()


def cmd_propagation(args: argparse.Namespace) -> int:
    """Show the propagation queue, pending evolution syncs or history."""
    conn, config, _ = _open_db(args)
    try:
        if args.view == "queue":
            rows = propagation.get_propagation_queue(conn)
            if not rows:
                print("Propagation queue is empty.")
                return 0
            for r in rows:
                destination = r["target_path"] or r["target_kind"]
                print(f"  {r['learning_id'][:8]}  {r['confidence']:.2f}  {_clip(r['title'], 40):<40} -> {destination}")
        elif args.view == "syncs":
            rows = propagation.get_pending_evolution_syncs(conn)
            if not rows:
                print("No pending evolution syncs.")
                return 0
            for r in rows:
                destination = r["target_path"] or r["target_kind"]
                print(
                    f"  {r['old_learning_id'][:8]} -> {r['new_learning_id'][:8]}  "
                    f"{_clip(r['new_title'], 40):<40} at {destination}"
                )
        else:
            rows = propagation.get_propagation_history(conn, args.limit)
            if not rows:
                print("No propagation history.")
                return 0
            for r in rows:
                print(f"  {r['propagated_at'][:19]}  {r['propagated_by']:<16} {_clip(r['learning_title'], 36):<36} -> {r['destination']}")
        print(f"\n{len(rows)} entr{'y' if len(rows) == 1 else 'ies'}.")
        return 0
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Evaluation commands
# ---------------------------------------------------------------------------


def cmd_eval(args: argparse.Namespace) -> int:
    """Score a feature now."""
    conn, config, _ = _open_db(args)
    try:
        eval_id = evaluation.compute_feature_eval(conn, args.feature_id, _actor(args, config))
        result = evaluation.get_feature_eval(conn, eval_id)
        print(f"\nFeature {args.feature_id}: {result.health_status.value}")
        print(f"  Efficiency : {result.efficiency_score:.1f}")
        print(f"  Quality    : {result.quality_score:.1f}")
        print(f"  Overall    : {result.overall_score:.1f}")
        return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()


def cmd_health(args: argparse.Namespace) -> int:
    """Compute system health over a period."""
    conn, config, _ = _open_db(args)
    try:
        eval_id = evaluation.compute_system_health(conn, args.period, _actor(args, config))
        result = evaluation.get_system_health(conn, eval_id)
        print(f"\nSystem health ({result.period_days} days): {result.health_status.value}")
        print(f"  Overall : {result.overall_score:.1f}")
        for alert in result.alerts:
            print(f"  [{alert['severity']}] {alert['message']}")
        return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()


def cmd_alerts(args: argparse.Namespace) -> int:
    """Show active alerts."""
    conn, config, _ = _open_db(args)
    try:
        alerts = evaluation.list_alerts(conn, active_only=not args.all, feature_id=args.feature)
        if not alerts:
            print("No active alerts.")
            return 0

        print(f"\n{'ID':<10} {'Severity':<10} {'Dimension':<16} {'Ack':<5} {'Message'}")
        print("-" * 90)
        for a in alerts:
            ack = "yes" if a.acknowledged_at else ""
            print(f"{a.id[:8]:<10} {a.severity.value:<10} {a.dimension:<16} {ack:<5} {_clip(a.message, 48)}")
        return 0
    finally:
        conn.close()


def cmd_ack(args: argparse.Namespace) -> int:
    """Acknowledge an alert."""
    conn, config, _ = _open_db(args)
    try:
        if evaluation.acknowledge_alert(conn, args.alert_id, _actor(args, config)):
            print(f"Alert {args.alert_id} acknowledged.")
        else:
            print(f"Alert {args.alert_id} was already acknowledged.")
        return 0
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    finally:
        conn.close()


def cmd_audit(args: argparse.Namespace) -> int:
    """Show audit log."""
    conn, config, _ = _open_db(args)
    try:
        entries = audit.query_audit(conn, feature_id=args.feature, limit=args.limit or 50)

        if not entries:
            print("No audit entries found.")
            return 0

        print(f"\n{'Timestamp':<22} {'Actor':<20} {'Action':<22} {'Entity':<18} {'Old':<12} {'New'}")
        print("-" * 110)
        for e in entries:
            ts = e["timestamp"][:19] if e["timestamp"] else ""
            entity = f"{e['entity_type']}/{e['entity_id']}"
            print(
                f"{ts:<22} {_clip(e['actor'], 18):<20} {e['action']:<22} {_clip(entity, 16):<18} "
                f"{e.get('old_state') or '':<12} {e.get('new_state') or ''}"
            )
        return 0
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Main CLI
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="controlplane",
        description="Workflow control plane CLI: feature lifecycle, knowledge and evaluation",
    )
    parser.add_argument(
        "--db",
        metavar="PATH",
        help="Path to controlplane.db (default: read from .controlplane/config.yaml)",
    )
    parser.add_argument(
        "--project-root",
        metavar="PATH",
        help="Path to consuming repo root (default: auto-detect from .controlplane/)",
    )
    parser.add_argument("--log-level", help="Logging level (default: from config, INFO)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # list
    p_list = subparsers.add_parser("list", help="List features")
    p_list.add_argument("--status", help="Filter by status (e.g. IN_PROGRESS)")
    p_list.set_defaults(func=cmd_list)

    # status
    p_status = subparsers.add_parser("status", help="Show feature status")
    p_status.add_argument("feature_id", help="Feature ID")
    p_status.set_defaults(func=cmd_status)

    # create
    p_create = subparsers.add_parser("create", help="Register a new feature")
    p_create.add_argument("feature_id", help="Feature ID")
    p_create.add_argument("name", help="Feature name")
    p_create.add_argument("--complexity", type=int, choices=[1, 2, 3], default=2)
    p_create.add_argument("--tier", default="ROUTINE", help="ROUTINE, EXPEDITED or CRITICAL")
    p_create.add_argument("--epic", help="Epic ID")
    p_create.add_argument("--parent", help="Parent feature ID")
    p_create.add_argument("--by", help="Actor identifier")
    p_create.set_defaults(func=cmd_create)

    # transition
    p_trans = subparsers.add_parser("transition", help="Move a feature to another phase")
    p_trans.add_argument("feature_id", help="Feature ID")
    p_trans.add_argument("phase", help="Target phase (0-8)")
    p_trans.add_argument("--escalate", action="store_true", help="Record as an escalation")
    p_trans.add_argument("--note", help="Transition note")
    p_trans.add_argument("--by", help="Actor identifier")
    p_trans.set_defaults(func=cmd_transition)

    # complete
    p_complete = subparsers.add_parser("complete", help="Complete a feature")
    p_complete.add_argument("feature_id", help="Feature ID")
    p_complete.add_argument("--by", help="Actor identifier")
    p_complete.set_defaults(func=cmd_complete)

    # cancel
    p_cancel = subparsers.add_parser("cancel", help="Cancel a feature")
    p_cancel.add_argument("feature_id", help="Feature ID")
    p_cancel.add_argument("--reason", help="Cancellation reason")
    p_cancel.add_argument("--by", help="Actor identifier")
    p_cancel.set_defaults(func=cmd_cancel)

    # block
    p_block = subparsers.add_parser("block", help="Open a blocker")
    p_block.add_argument("feature_id", help="Feature ID")
    p_block.add_argument("blocker_type", help="e.g. VALIDATION_FAILED, HUMAN_DECISION_REQUIRED")
    p_block.add_argument("severity", help="LOW, MEDIUM, HIGH or CRITICAL")
    p_block.add_argument("title", help="Short title")
    p_block.add_argument("--description", help="Longer description")
    p_block.add_argument("--by", help="Actor identifier")
    p_block.set_defaults(func=cmd_block)

    # resolve
    p_resolve = subparsers.add_parser("resolve", help="Resolve a blocker")
    p_resolve.add_argument("blocker_id", type=int, help="Blocker ID")
    p_resolve.add_argument("--notes", help="Resolution notes")
    p_resolve.add_argument("--by", help="Actor identifier")
    p_resolve.set_defaults(func=cmd_resolve)

    # gate
    p_gate = subparsers.add_parser("gate", help="Record a quality gate decision")
    p_gate.add_argument("feature_id", help="Feature ID")
    p_gate.add_argument("gate_name", help="Gate name (e.g. design_review)")
    p_gate.add_argument("decision", choices=["APPROVED", "REJECTED"])
    p_gate.add_argument("--notes", help="Decision notes")
    p_gate.add_argument("--by", help="Approver identifier")
    p_gate.set_defaults(func=cmd_gate)

    # locks
    p_locks = subparsers.add_parser("locks", help="Show active path locks")
    p_locks.add_argument("--feature", help="Filter by feature ID")
    p_locks.set_defaults(func=cmd_locks)

    # conflicts
    p_conflicts = subparsers.add_parser("conflicts", help="Show feature conflicts")
    p_conflicts.add_argument("--feature", help="Filter by feature ID")
    p_conflicts.add_argument("--all", action="store_true", help="Include resolved conflicts")
    p_conflicts.set_defaults(func=cmd_conflicts)

    # learnings
    p_learn = subparsers.add_parser("learnings", help="List learnings")
    p_learn.add_argument("--feature", help="Filter by feature ID")
    p_learn.add_argument("--all", action="store_true", help="Include superseded versions")
    p_learn.set_defaults(func=cmd_learnings)

    # propagation
    p_prop = subparsers.add_parser("propagation", help="Propagation queue, syncs or history")
    p_prop.add_argument("view", choices=["queue", "syncs", "history"])
    p_prop.add_argument("--limit", type=int, default=50, help="Max history entries")
    p_prop.set_defaults(func=cmd_propagation)

    # eval
    p_eval = subparsers.add_parser("eval", help="Score a feature")
    p_eval.add_argument("feature_id", help="Feature ID")
    p_eval.add_argument("--by", help="Actor identifier")
    p_eval.set_defaults(func=cmd_eval)

    # health
    p_health = subparsers.add_parser("health", help="Compute system health")
    p_health.add_argument("--period", type=int, choices=[7, 30, 90], default=7)
    p_health.add_argument("--by", help="Actor identifier")
    p_health.set_defaults(func=cmd_health)

    # alerts
    p_alerts = subparsers.add_parser("alerts", help="Show alerts")
    p_alerts.add_argument("--feature", help="Filter by feature ID")
    p_alerts.add_argument("--all", action="store_true", help="Include resolved alerts")
    p_alerts.set_defaults(func=cmd_alerts)

    # ack
    p_ack = subparsers.add_parser("ack", help="Acknowledge an alert")
    p_ack.add_argument("alert_id", help="Alert ID")
    p_ack.add_argument("--by", help="Actor identifier")
    p_ack.set_defaults(func=cmd_ack)

    # audit
    p_audit = subparsers.add_parser("audit", help="Show audit log")
    p_audit.add_argument("--feature", help="Filter by feature ID")
    p_audit.add_argument("--limit", type=int, default=50, help="Max entries")
    p_audit.set_defaults(func=cmd_audit)

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
