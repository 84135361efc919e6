from chatrelay.main import main

main()
