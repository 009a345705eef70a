import subprocess
import sys

def run_command(command, output_file):
    print(f"Running: {' '.join(command)}")
    try:
        with open(output_file, "w") as f:
            result = subprocess.run(
                command,
                stdout=f,
                stderr=subprocess.STDOUT,
                text=True
            )
        print(f"Finished: {' '.join(command)} (Exit Code: {result.returncode})")
        return result.returncode
    except OSError as e:
        print(f"Error running {' '.join(command)}: {e}")
        return 1

def main():
    print("Checking distort...")

    # Each tool writes its report next to this script
    commands = [
        (["uv", "run", "ruff", "check", "src", "tests"], "ruff_output.txt"),
        (["uv", "run", "mypy", "src/distort"], "mypy_output.txt"),
        (["uv", "run", "pytest", "-v", "tests"], "test_output.txt"),
        (["uv", "run", "distort", "demo", "--cycles", "1"], "demo_output.txt"),
    ]

    failed = [c for c, out in commands if run_command(c, out) != 0]

    print("\nChecks completed.")
    if failed:
        print(f"{len(failed)} check(s) failed, see the *_output.txt files.")
        sys.exit(1)
    print("All checks passed!")
    sys.exit(0)

if __name__ == "__main__":
    main()
