import time
import argparse, os, json, logging
import random
import numpy as np
from typing import Dict, List, Optional

from dpgo_common.data_logging import PGOLogger
from dpgo_common.kpi_logging import KPILogger
from dpgo_common.metrics import align_and_ate_per_robot, relative_position_error, trajectory_positions
from dpgo_common.models import RelativeSEMeasurement
from dpgo_common.viz import plot_convergence, plot_trajectories_2d, plot_trajectories_3d
from dpgo_core.initialization import chordal_initialization
from dpgo_core.loader import LoaderConfig, get_dimension_and_num_poses, read_g2o
from dpgo_core.quadratic import OptimizerConfig
from dpgo_core import reference
from dpgo_core.robust import RobustCostParameters
from dpgo_decentralised.agents import PGOAgentParameters
from dpgo_decentralised.backend import BackendConfig, BackendResult, DistributedPGOBackend
from dpgo_decentralised.partition import contiguous_assignment


def parse_args():
    ap = argparse.ArgumentParser(description="Distributed pose-graph optimisation on g2o datasets (simulated robot team).")
    ap.add_argument("--g2o", required=True, help="Path to a .g2o pose graph (EDGE_SE2 or EDGE_SE3:QUAT)")
    ap.add_argument("--export-path", required=True, help="Directory to write outputs")
    ap.add_argument("--num-robots", type=int, default=2, help="Number of robots the graph is split among")
    ap.add_argument("--rank", type=int, default=None, help="Relaxation rank r (default: d)")
    ap.add_argument("--acceleration", action="store_true", help="Enable Nesterov acceleration (synchronous only)")
    ap.add_argument("--restart-interval", type=int, default=30, help="Iterations between acceleration restarts")
    ap.add_argument("--robust", choices=["l2", "tls", "gnc_tls"], default="l2", help="Robust cost on loop closures")
    ap.add_argument("--gnc-barc", type=float, default=5.0, help="Maximum admissible residual for TLS/GNC_TLS")
    ap.add_argument("--inner-iters", type=int, default=30, help="Iterations between loop closure weight updates")
    ap.add_argument("--min-inliers", type=int, default=2,
                    help="Fewest inlier shared loop closures a frame alignment may rest on")
    ap.add_argument("--rel-change-tol", type=float, default=0.2,
                    help="Average translation change below which a robot is ready to terminate")
    ap.add_argument("--local-iters", type=int, default=10, help="Max RGD iterations per local solve")
    ap.add_argument("--max-rounds", type=int, default=1000, help="Max synchronous rounds")
    ap.add_argument("--selection", choices=["round_robin", "random"], default="round_robin",
                    help="Rule picking the robot that optimises each synchronous round")
    ap.add_argument("--async", dest="run_async", action="store_true",
                    help="Run every agent in its own Poisson-clocked thread")
    ap.add_argument("--rate", type=float, default=50.0, help="Mean iteration rate per agent in Hz (--async)")
    ap.add_argument("--timeout", type=float, default=30.0, help="Wall-clock limit in seconds (--async)")
    ap.add_argument("--log", default="INFO", help="Logging level")
    ap.add_argument("--log-data", action="store_true",
                    help="Write per-robot initial/optimised trajectories and measurements under <export>/robots")
    ap.add_argument("--kpi-jsonl", default=None, help="Write KPI events to this .jsonl file")
    ap.add_argument("--reference", action="store_true",
                    help="Solve the full graph centrally with GTSAM and report ATE/RPE against it")
    ap.add_argument("--seed", type=int, default=None, help="Seed for robot selection and global RNGs")
    return ap.parse_args()


def ensure_dir(p):
    os.makedirs(p, exist_ok=True)


def split_reference(T_ref: np.ndarray, d: int, num_poses: int, num_robots: int) -> Dict[int, np.ndarray]:
    """Cut a packed single-robot trajectory into the contiguous per-robot blocks."""
    out = {}
    dh = d + 1
    for rid, (start, end) in enumerate(contiguous_assignment(num_poses, num_robots)):
        out[rid] = T_ref[:, start * dh:end * dh].copy()
    return out


def export_trajectories(result: BackendResult, d: int, out_dir: str) -> List[str]:
    writer = PGOLogger(out_dir)
    paths = []
    for rid, T in sorted(result.trajectories.items()):
        n = T.shape[1] // (d + 1)
        paths.append(writer.log_trajectory(d, n, T, f"trajectory_robot_{rid}.csv"))
    return paths


def export_stats_json(result: BackendResult, elapsed_s: float, metrics: Optional[dict], out_path: str):
    stats = {
        "rounds": result.rounds,
        "converged": result.converged,
        "elapsed_s": elapsed_s,
        "robots": {
            str(rid): {
                "state": s.state.name,
                "iterations": s.iteration_number,
                "ready_to_terminate": s.ready_to_terminate,
                "relative_change": s.relative_change,
            }
            for rid, s in result.statuses.items()
        },
    }
    if metrics:
        stats["metrics"] = metrics
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(stats, f, indent=2)


def compute_reference_metrics(args, measurements: List[RelativeSEMeasurement], d: int, num_poses: int,
                              result: BackendResult) -> Optional[dict]:
    log = logging.getLogger("dpgo.cli")
    if reference.gtsam is None:
        log.warning("GTSAM not available; skipping the centralised reference")
        return None
    initial = chordal_initialization(measurements, num_poses, d)
    robust_kind = None if args.robust == "l2" else "huber"
    T_ref = reference.solve_centralised_reference(measurements, initial, robust_kind=robust_kind)
    refs = split_reference(T_ref.get_data(), d, num_poses, args.num_robots)
    ate = align_and_ate_per_robot(result.trajectories, refs, d)
    rpe = {}
    for rid, T in result.trajectories.items():
        rpe[str(rid)] = relative_position_error(trajectory_positions(T, d), trajectory_positions(refs[rid], d))
    for rid, m in sorted(ate.items()):
        if m.get("rmse") is not None:
            log.info("Robot %d ATE-RMSE vs reference: %.4f (%d poses)", rid, m["rmse"], m["matches"])
    return {
        "ate": {str(rid): {"rmse": m.get("rmse"), "matches": m.get("matches")} for rid, m in ate.items()},
        "rpe": rpe,
    }


def build_params(args, d: int, out_dir: str) -> PGOAgentParameters:
    robust_params = RobustCostParameters(cost_type=args.robust, gnc_barc=args.gnc_barc)
    return PGOAgentParameters(
        d=d,
        r=args.rank or d,
        num_robots=args.num_robots,
        acceleration=args.acceleration,
        restart_interval=args.restart_interval,
        robust_cost_params=robust_params,
        robust_opt_inner_iters=args.inner_iters,
        robust_init_min_inliers=args.min_inliers,
        rel_change_tol=args.rel_change_tol,
        max_num_iters=args.max_rounds,
        log_data=args.log_data,
        log_directory=os.path.join(out_dir, "robots") if args.log_data else "",
        optimizer=OptimizerConfig(max_iterations=args.local_iters),
    )


def main():
    args = parse_args()
    logging.basicConfig(level=args.log.upper(),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    log = logging.getLogger("dpgo.cli")

    if args.seed is not None:
        random.seed(args.seed)
        np.random.seed(args.seed)

    out_dir = os.path.abspath(args.export_path)
    ensure_dir(out_dir)

    measurements, num_poses = read_g2o(args.g2o, LoaderConfig())
    d, _ = get_dimension_and_num_poses(measurements)
    log.info("Splitting %d poses (d=%d) among %d robots", num_poses, d, args.num_robots)

    params = build_params(args, d, out_dir)
    config = BackendConfig(max_rounds=args.max_rounds, selection=args.selection, seed=args.seed,
                           async_rate=args.rate, async_timeout=args.timeout)
    kpi = KPILogger(enabled=bool(args.kpi_jsonl), log_path=args.kpi_jsonl, emit_to_logger=False)

    t0 = time.perf_counter()
    try:
        backend = DistributedPGOBackend.from_measurements(measurements, num_poses, args.num_robots,
                                                          params, config, kpi=kpi)
        if args.run_async:
            result = backend.run_async()
        else:
            result = backend.run()
        if args.log_data:
            for agent in backend.agents.values():
                agent.reset()
    finally:
        kpi.close()
    elapsed = time.perf_counter() - t0
    log.info("Finished in %.2f s: %d rounds, converged=%s", elapsed, result.rounds, result.converged)

    for path in export_trajectories(result, d, out_dir):
        log.info("Wrote %s", path)

    metrics = None
    if args.reference:
        metrics = compute_reference_metrics(args, measurements, d, num_poses, result)

    export_stats_json(result, elapsed, metrics, os.path.join(out_dir, "stats.json"))
    if result.trajectories:
        plot_trajectories_2d(result.trajectories, d, os.path.join(out_dir, "trajectories_xy.png"))
        if d == 3:
            plot_trajectories_3d(result.trajectories, d, os.path.join(out_dir, "trajectories_3d.png"))
    plot_convergence(result.history, os.path.join(out_dir, "convergence.png"))


if __name__ == "__main__":
    main()
