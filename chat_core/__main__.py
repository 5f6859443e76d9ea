from chat_core.api.app import main

if __name__ == "__main__":
    main()
