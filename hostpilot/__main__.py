from hostpilot.control.__main__ import main

if __name__ == "__main__":
    main()
