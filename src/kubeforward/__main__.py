from kubeforward.cli.main import run

run()
