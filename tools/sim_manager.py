#!/usr/bin/env python3

import argparse
import sys
import os
import shlex
from typing import Dict, List, Optional, Tuple
import subprocess
import concurrent.futures
import multiprocessing

PROGRAMS_DIR = "programs"
WORK_DIR = "work"
IMAGE_EXTENSIONS = ["hex", "bin", "elf"]
ISS_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "mips_iss.py")


def resolve_test(test: str, programs_dir: str = PROGRAMS_DIR) -> Tuple[str, str]:
    """Map a test name (suite.name) to its program image and golden trace."""
    test_path = test.split(".")
    if len(test_path) != 2:
        raise ValueError(f"Test name must look like <suite>.<name>, got '{test}'")
    base = os.path.join(programs_dir, test_path[0], test_path[1])
    for extension in IMAGE_EXTENSIONS:
        if os.path.exists(f"{base}.{extension}"):
            return f"{base}.{extension}", f"{base}.log"
    raise FileNotFoundError(f"No program image found for {test} (looked for {base}.{{{','.join(IMAGE_EXTENSIONS)}}})")


def read_extra_args(image: str) -> List[str]:
    """Extra emulator arguments for a program, from <name>.args next to it."""
    args_path = os.path.splitext(image)[0] + ".args"
    if not os.path.exists(args_path):
        return []
    with open(args_path, 'r') as f:
        return shlex.split(f.read(), comments=True)


def run_iss(test: str, programs_dir: str = PROGRAMS_DIR, work_dir: str = WORK_DIR) -> str:
    """Run the emulator for a test, returns the path of the trace it wrote."""
    os.makedirs(os.path.join(work_dir, test), exist_ok=True)
    image, _ = resolve_test(test, programs_dir)
    iss_log = os.path.join(work_dir, test, "iss.log")
    cmd = [sys.executable, ISS_SCRIPT, image, "-q", "-o", iss_log] + read_extra_args(image)

    # Keep the emulator's own output next to the trace
    run_log_path = os.path.join(work_dir, test, "run.log")
    with open(run_log_path, 'w') as run_log:
        result = subprocess.run(cmd, stdout=run_log, stderr=subprocess.STDOUT)
    if result.returncode != 0:
        raise RuntimeError(f"ISS returned error code {result.returncode} for test {test}. "
                           f"See {run_log_path} for details.")
    return iss_log


def parse_trace(text: str) -> List[Dict]:
    """Split a trace log into pc / instr / mnemonic / touch entries."""
    entries = []
    for line in text.split("\n"):
        if line.strip() == "":
            continue
        line = line.split(";")
        if line[0] == "final":
            entries.append({'pc': 'final', 'instr': '', 'mnemonic': 'final', 'touch': line[1:]})
        else:
            entries.append({
                'pc': line[0],
                'instr': line[1],
                'mnemonic': line[2] if len(line) > 2 else '',
                'touch': [t for t in line[3:] if t != ""],
            })
    return entries


def compare_traces(iss_exe: List[Dict], ref_exe: List[Dict]) -> Optional[List[str]]:
    """Return the report lines of the first mismatch, or None when equal."""
    for idx in range(min(len(iss_exe), len(ref_exe))):
        iss, ref = iss_exe[idx], ref_exe[idx]
        if str(iss['pc']).upper() != str(ref['pc']).upper():
            return [f"Error: PC Mismatch at entry {idx}",
                    f"ISS: {iss['pc']}",
                    f"REF: {ref['pc']}"]
        if str(iss['instr']).upper() != str(ref['instr']).upper():
            return [f"Error: Instruction mismatch at PC {iss['pc']}",
                    f"ISS: {iss['instr']}",
                    f"REF: {ref['instr']}"]
        iss_touch = [str(t).upper() for t in iss['touch']]
        ref_touch = [str(t).upper() for t in ref['touch']]
        if iss_touch != ref_touch:
            return [f"Error: Result mismatch at PC {iss['pc']} for instruction --> {iss['mnemonic']}",
                    f"ISS: {iss['touch']}",
                    f"REF: {ref['touch']}"]
    if len(iss_exe) != len(ref_exe):
        return ["Error: Trace length mismatch",
                f"ISS: {len(iss_exe)} entries",
                f"REF: {len(ref_exe)} entries"]
    return None


def compare_results(test: str, programs_dir: str = PROGRAMS_DIR, work_dir: str = WORK_DIR) -> bool:
    """Compare the emulator trace of a test with its golden trace."""
    _, golden = resolve_test(test, programs_dir)
    compare_log_path = os.path.join(work_dir, test, "compare.log")
    try:
        with open(os.path.join(work_dir, test, "iss.log"), "r") as f:
            iss_log = f.read()
        with open(golden, "r") as f:
            ref_log = f.read()
        mismatch = compare_traces(parse_trace(iss_log), parse_trace(ref_log))
    except OSError as e:
        mismatch = [f"Error: {e}"]

    with open(compare_log_path, 'w') as compare_log:
        compare_log.write("\n".join(mismatch) + "\n" if mismatch else "Traces match\n")

    test_passed = mismatch is None
    if test_passed:
        print(f"{test} {'.' * (50 - len(test))}. \033[92mPASSED\033[0m")
    else:
        print(f"{test} {'.' * (50 - len(test))}. \033[91mFAILED\033[0m")
    return test_passed


def read_task_list(filename: str) -> List[str]:
    """Read and return list of tests from file."""
    with open(filename, 'r') as f:
        return [line.strip() for line in f if line.strip() and not line.startswith("#")]


def run_e2e(test: str, programs_dir: str = PROGRAMS_DIR, work_dir: str = WORK_DIR) -> bool:
    """Run a test through the emulator and check it against its golden trace."""
    run_iss(test, programs_dir, work_dir)
    return compare_results(test, programs_dir, work_dir)


def main(argv: Optional[List[str]] = None) -> int:
    # Parse arguments
    parser = argparse.ArgumentParser(
        description="Regression manager: runs programs on the MIPS emulator and checks their traces"
    )

    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("-t", "--task-list", help="Path to the task list file")
    group.add_argument("-n", "--test-name", help="Name of the test to run (<suite>.<name>)")

    parser.add_argument("-p", "--programs", default=PROGRAMS_DIR,
                        help=f"Directory holding the program suites (default: {PROGRAMS_DIR})")
    parser.add_argument("-w", "--work", default=WORK_DIR,
                        help=f"Output directory (default: {WORK_DIR})")
    parser.add_argument("-j", "--jobs", type=int, default=multiprocessing.cpu_count(),
                        help="Number of tests run in parallel (default: CPU count)")

    args = parser.parse_args(argv)

    os.makedirs(args.work, exist_ok=True)

    # Get list of tests to run
    if args.task_list:
        if not os.path.exists(args.task_list):
            print(f"Error: Task list file '{args.task_list}' not found")
            return 1
        tests = read_task_list(args.task_list)
        if not tests:
            print("Error: No valid tests found in task list")
            return 1
    else:
        tests = [args.test_name]

    failures = 0
    with concurrent.futures.ThreadPoolExecutor(max_workers=max(1, args.jobs)) as executor:
        future_to_test = {executor.submit(run_e2e, test, args.programs, args.work): test for test in tests}

        for future in concurrent.futures.as_completed(future_to_test):
            test = future_to_test[future]
            try:
                if not future.result():
                    failures += 1
            except Exception as e:
                print(f"Error running test {test}: {e}")
                failures += 1

    print(f"{len(tests) - failures}/{len(tests)} tests passed")
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(main())
