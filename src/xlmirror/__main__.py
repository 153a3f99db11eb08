from xlmirror.cli import main

main()
